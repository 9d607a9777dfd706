"""Errors surfaced by the continuity services."""


class ContinuitySessionVersionMismatchError(Exception):
    """Raised when a versioned save presents a stale version."""

    def __init__(self, session_id: str, expected_version: int, actual_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Continuity session {session_id} version mismatch: "
            f"expected {expected_version}, found {actual_version}"
        )


class UnsupportedProviderError(Exception):
    """Raised when a provider offers neither a start image nor a native style reference."""

    def __init__(self, provider: str, model_id: str):
        self.provider = provider
        self.model_id = model_id
        super().__init__(
            f"Provider '{provider}' (model {model_id}) does not support continuity: "
            "it accepts neither a start image nor a native style reference"
        )


class ContinuitySessionNotFoundError(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Continuity session not found: {session_id}")


class ShotNotFoundError(Exception):
    def __init__(self, session_id: str, shot_id: str):
        self.session_id = session_id
        self.shot_id = shot_id
        super().__init__(f"Shot {shot_id} not found in session {session_id}")


class AnchorResolutionError(Exception):
    """No visual anchor could be resolved for a continuity-mode shot."""
