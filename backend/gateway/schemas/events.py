from pydantic import BaseModel, ConfigDict, Field


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    identity: str
    method: str
    path: str
    request_id: str | None = Field(default=None, serialization_alias="requestId")
    accepted_at: int = Field(serialization_alias="acceptedAt")
    expires_at: int = Field(serialization_alias="expiresAt")


class EventPollOut(BaseModel):
    ok: bool = True
    cursor: int
    events: list[EventOut]
