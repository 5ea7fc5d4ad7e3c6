"""LocalModel exception hierarchy."""

from __future__ import annotations

INSTALL_URL = "https://ollama.com/download"
INSTALL_COMMAND = "curl -fsSL https://ollama.com/install.sh | sh"


class LocalModelError(Exception):
    """Base exception for all LocalModel errors."""


# --- Provisioning ---


class ProvisionError(LocalModelError):
    """The engine or a usable model could not be made ready."""


class EngineMissingError(ProvisionError):
    """The engine binary is not installed or cannot be invoked.

    Fatal: the manager halts and only a caller-directed install can recover.
    """

    def __init__(self, binary: str, reason: str = "") -> None:
        self.binary = binary
        self.reason = reason
        self.guidance = (
            f"'{binary}' was not found or could not be started. "
            f"Install it from {INSTALL_URL} or run: {INSTALL_COMMAND}"
        )
        message = self.guidance if not reason else f"{self.guidance} ({reason})"
        super().__init__(message)


class ServerUnreachableError(ProvisionError):
    """The engine server did not answer after start attempts."""

    def __init__(self, url: str, attempts: int) -> None:
        self.url = url
        self.attempts = attempts
        super().__init__(
            f"Engine server at {url} unreachable after {attempts} attempts. "
            "Start it manually with: ollama serve"
        )


class NoUsableModelError(ProvisionError):
    """No model is installed and the default one could not be obtained."""

    def __init__(self, default_model: str, reason: str = "") -> None:
        self.default_model = default_model
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"No usable model. Default model '{default_model}' is not installed{detail}. "
            f"Download it with: ollama pull {default_model}"
        )


# --- Persistent session ---


class SessionError(LocalModelError):
    """The persistent session channel failed."""


class SessionProcessDiedError(SessionError):
    """The session process exited or closed its output."""

    def __init__(self, model_name: str | None, returncode: int | None = None) -> None:
        self.model_name = model_name
        self.returncode = returncode
        super().__init__(f"Session process for '{model_name}' died (returncode={returncode})")


class SessionWriteError(SessionError):
    """Writing the prompt to the session's stdin failed."""


class SessionTimeoutError(SessionError):
    """No response arrived within the soft timeout window."""

    def __init__(self, model_name: str | None, timeout: float) -> None:
        self.model_name = model_name
        self.timeout = timeout
        super().__init__(f"Session for '{model_name}' produced no output within {timeout}s")


# --- One-shot invocation ---


class InvokeError(LocalModelError):
    """A one-shot engine invocation failed."""


class InvokeTimeoutError(InvokeError):
    """The one-shot process exceeded its hard timeout and was killed."""

    def __init__(self, model_name: str, timeout: float) -> None:
        self.model_name = model_name
        self.timeout = timeout
        super().__init__(f"Invocation of '{model_name}' timed out after {timeout}s")


class NonZeroExitError(InvokeError):
    """The one-shot process exited with a non-zero code."""

    def __init__(self, code: int, stderr_tail: str) -> None:
        self.code = code
        self.stderr_tail = stderr_tail
        super().__init__(f"Engine exited with code {code}: {stderr_tail}")


class SpawnFailedError(InvokeError):
    """The one-shot process could not be started."""


# --- Downloads ---


class DownloadError(LocalModelError):
    """A model download failed."""


class DownloadTimeoutError(DownloadError):
    """The download exceeded its overall timeout and was killed."""

    def __init__(self, model_name: str, timeout: float) -> None:
        self.model_name = model_name
        self.timeout = timeout
        super().__init__(f"Download of '{model_name}' timed out after {timeout}s")


class DownloadFailedError(DownloadError):
    """The download process could not start or exited with an error."""


# --- Generation ---


class GenerateError(LocalModelError):
    """A generate() request could not be served."""


class AllChannelsFailedError(GenerateError):
    """Both the persistent session and the fallback invocations failed."""

    def __init__(self, model_name: str, causes: list[Exception]) -> None:
        self.model_name = model_name
        self.causes = causes
        last = f": {causes[-1]}" if causes else ""
        super().__init__(f"All channels failed for '{model_name}'{last}")
