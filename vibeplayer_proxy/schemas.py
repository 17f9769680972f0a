from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ResolveRequest(GenericParams):
    url: Optional[str] = Field(None, description="The share URL to resolve.")
    link: Optional[str] = Field(None, description="Alias of url accepted for compatibility.")

    @property
    def share_url(self) -> Optional[str]:
        return self.link or self.url


class StreamParams(GenericParams):
    url: Optional[str] = Field(None, description="The direct media URL to stream.")


class DownloadParams(StreamParams):
    filename: Optional[str] = Field(None, description="Filename for the attachment. Sanitized before use.")


class MediaMetadata(BaseModel):
    name: str = "video.mp4"
    size: int = 0
    mime: str = "video/mp4"


class ResolutionResult(BaseModel):
    """Outcome of one resolution run.

    On success ``url`` holds the direct link; on failure ``errors`` holds one
    human readable reason per attempted method, in the order they ran.
    """

    success: bool
    url: Optional[str] = None
    metadata: Optional[MediaMetadata] = None
    thumbnail: str = ""
    method: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    cached: bool = False

    @classmethod
    def failure(cls, error: str, message: str, errors: List[str]) -> "ResolutionResult":
        return cls(success=False, error=error, message=message, errors=list(errors))

    def to_payload(self) -> Dict[str, Any]:
        if self.success:
            payload = self.model_dump(include={"success", "url", "metadata", "thumbnail", "method"})
            payload["cached"] = self.cached
            payload["cache_hit"] = self.cached
            return payload
        return self.model_dump(include={"success", "error", "message", "errors"})
