class CodeRunnerError(Exception):
    """Base class for every error raised by coderunner."""


class ExecutionConnectionError(CodeRunnerError):
    pass


class ConnectionTimeoutError(ExecutionConnectionError):
    pass


class UnsupportedLanguageError(CodeRunnerError):
    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class QueueFullError(CodeRunnerError):
    pass


class CommandTimeoutError(CodeRunnerError):
    pass
