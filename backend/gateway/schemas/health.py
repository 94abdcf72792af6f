from pydantic import BaseModel, ConfigDict, Field


class HealthOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    version: str
    uptime_seconds: float = Field(serialization_alias="uptimeSeconds")
