from fastapi import APIRouter

from crm.core.responses import ApiResponse

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe", response_model=ApiResponse[dict[str, str]])
async def ping() -> ApiResponse[dict[str, str]]:
    return ApiResponse(message="pong", data={"status": "ok"})
