from pydantic import BaseModel, Field


class LlmStatus(BaseModel):
    available: bool = Field(..., description="Whether the model backend answered the liveness probe.")
    model: str = Field(..., description="Default model used for generation.")
    baseUrl: str = Field(..., description="Base URL of the model backend.")
