from fastapi import Depends, Request

from dkg_publisher.core.config import Settings, get_settings
from dkg_publisher.services.admin import QueueAdminService
from dkg_publisher.services.admission import AdmissionController
from dkg_publisher.services.dispatcher import PublishDispatcher
from dkg_publisher.services.intake import PublishIntakeService
from dkg_publisher.services.publish_client import get_publish_client
from dkg_publisher.services.repository import get_repository
from dkg_publisher.services.sessions import ToolSessionRegistry, get_session_registry
from dkg_publisher.services.tools import KnowledgeAssetTools
from dkg_publisher.services.validator import PublishDefaults


def get_dispatcher(request: Request) -> PublishDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


def get_intake_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    publish_client=Depends(get_publish_client),
    dispatcher: PublishDispatcher | None = Depends(get_dispatcher),
) -> PublishIntakeService:
    return PublishIntakeService(
        repository,
        publish_client,
        AdmissionController(max_queue_depth=settings.max_queue_depth, max_in_flight=settings.max_in_flight),
        PublishDefaults(
            priority=settings.default_priority,
            privacy=settings.default_privacy,
            epochs=settings.default_epochs,
            max_attempts=settings.default_max_attempts,
        ),
        on_enqueued=dispatcher.notify if dispatcher is not None else None,
    )


def get_admin_service(repository=Depends(get_repository)) -> QueueAdminService:
    return QueueAdminService(repository)


def get_tools(
    intake: PublishIntakeService = Depends(get_intake_service),
    sessions: ToolSessionRegistry = Depends(get_session_registry),
) -> KnowledgeAssetTools:
    return KnowledgeAssetTools(intake, sessions)
