class LessonError(Exception):
    """Base class for failures the HTTP layer turns into an error response."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ClientInputError(LessonError):
    status_code = 400


class ScriptFetchError(LessonError):
    status_code = 500
