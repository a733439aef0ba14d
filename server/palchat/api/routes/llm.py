from fastapi import APIRouter

from palchat.agents.llm import get_gateway
from palchat.core.config import get_settings
from palchat.models.llm import LlmStatus

router = APIRouter(prefix="/llm", tags=["llm"])


@router.get("/status", response_model=LlmStatus)
async def llm_status() -> LlmStatus:
    settings = get_settings()
    gateway = get_gateway(settings)()
    available = await gateway.is_available_async()
    return LlmStatus(available=available, model=gateway.model, baseUrl=settings.ollama_base_url)
