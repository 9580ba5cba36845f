from __future__ import annotations


class BilibiliClientError(Exception):
    pass


class TransportError(BilibiliClientError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(BilibiliClientError):
    pass


class UpstreamBusinessError(BilibiliClientError):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Bilibili API error [{code}]: {message}")
        self.code = code
        self.upstream_message = message


class AuthRequiredError(BilibiliClientError):
    """The upstream rejected the request because the credential is missing or invalid."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Bilibili authentication required [{code}]: {message}")
        self.code = code
        self.upstream_message = message


class NoArtifactAvailable:
    """Sentinel for derived data that legitimately does not exist for a video."""

    _instance: NoArtifactAvailable | None = None

    def __new__(cls) -> NoArtifactAvailable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_ARTIFACT"


NO_ARTIFACT = NoArtifactAvailable()
