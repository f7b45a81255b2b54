from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from dkg_publisher.api.deps import get_tools
from dkg_publisher.schemas.tools import ToolDefinitionOut, ToolInvokeRequest, ToolResultOut, ToolSessionOut
from dkg_publisher.services.admission import AdmissionRejectedError, DependencyUnavailableError
from dkg_publisher.services.repository import RepositoryUnavailableError
from dkg_publisher.services.sessions import ToolSessionRegistry, get_session_registry
from dkg_publisher.services.tools import KnowledgeAssetTools, ToolNotFoundError, ToolSessionError

router = APIRouter()


@router.get("", response_model=list[ToolDefinitionOut])
async def list_tools(tools: KnowledgeAssetTools = Depends(get_tools)) -> list[ToolDefinitionOut]:
    return [
        ToolDefinitionOut(
            name=definition.name,
            title=definition.title,
            description=definition.description,
            input_schema=definition.input_schema,
        )
        for definition in tools.definitions()
    ]


@router.post("/sessions", response_model=ToolSessionOut, status_code=status.HTTP_201_CREATED)
async def create_session(sessions: ToolSessionRegistry = Depends(get_session_registry)) -> ToolSessionOut:
    session = sessions.create()
    return ToolSessionOut(session_id=session.id, ttl_seconds=sessions.ttl_seconds)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def expire_session(
    session_id: str,
    sessions: ToolSessionRegistry = Depends(get_session_registry),
) -> Response:
    if not sessions.expire(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{tool_name}/invoke", response_model=ToolResultOut)
async def invoke_tool(
    tool_name: str,
    payload: ToolInvokeRequest,
    tools: KnowledgeAssetTools = Depends(get_tools),
    mcp_session_id: str | None = Header(default=None, alias="Mcp-Session-Id"),
) -> ToolResultOut:
    try:
        result = await tools.invoke(tool_name, payload.arguments, session_id=mcp_session_id)
    except ToolNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ToolSessionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except AdmissionRejectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": exc.reason, "message": str(exc)},
            headers={"Retry-After": str(tools.intake.admission.retry_after_seconds)},
        ) from exc
    except (DependencyUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "dependency_unavailable", "message": str(exc)},
        ) from exc

    return ToolResultOut.model_validate(result)
