"""Settings consumed read-only by the pipeline."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


REQUIRED_FIELDS = ("api_key", "language", "model")


class Settings(BaseModel):
    """Credentials and recognition options needed to open a session."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    api_key: str
    language: str
    model: str
    provider: str = "deepgram"
    theme: str = "blue"
    credentials_path: Optional[str] = None

    @field_validator("api_key", "language", "model")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    def __repr__(self) -> str:
        # Never leak the credential into logs
        return (f"Settings(provider={self.provider!r}, language={self.language!r}, "
                f"model={self.model!r}, api_key='***')")

    __str__ = __repr__
