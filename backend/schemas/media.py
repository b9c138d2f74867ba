from pydantic import BaseModel, ConfigDict, Field


class StreamTokenResponse(BaseModel):
    """Short-lived capability for one media item"""

    model_config = ConfigDict(populate_by_name=True)

    token: str
    expires_in: int = Field(..., serialization_alias="expiresIn")
