class RelayError(Exception):
    """Base class for errors surfaced to front-ends as usage feedback."""


class NotFoundError(RelayError, LookupError):
    pass


class AmbiguousError(RelayError):
    pass


class BusyError(RelayError):
    def __init__(self, session_id: str, slot: str = ""):
        self.session_id = session_id
        self.slot = slot
        label = slot or session_id
        super().__init__(f"Session {label} is busy.")


class ValidationError(RelayError, ValueError):
    pass
