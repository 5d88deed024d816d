from pydantic import BaseModel, ConfigDict, Field


class SessionSettings(BaseModel):
    """Read-only per-couple session configuration consumed by the clocks."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    session_duration: int = Field(default=10, ge=1)  # minutes
    turn_based_mode: bool = True
    turn_duration: int = Field(default=90, ge=0)  # seconds
    allow_extensions: bool = True
    max_extensions: int = Field(default=2, ge=0)
    timeouts_per_partner: int = 1
    timeout_duration: int = 2
    warm_up_questions: bool = False
    cool_down_time: int = 2
