"""Exception types raised by the core and translated to HTTP errors in main.py."""


class DataAlchemistError(Exception):
    """Base class for every error the application reports to the user."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"status": "error", "error": self.message, "type": type(self).__name__}


class InputError(DataAlchemistError):
    status_code = 400


class UnknownEntityError(InputError):
    def __init__(self, entity_type):
        super().__init__(f"Unknown entity type: {entity_type!r}. Expected clients, workers or tasks")
        self.entity_type = entity_type


class RuleConfigError(InputError):
    pass


# --------- Parse errors ---------

class ParseError(DataAlchemistError):
    status_code = 422


class InstructionParseError(ParseError):
    def __init__(self, message: str = "Unable to parse instruction. Try: set column=value where column2=somevalue"):
        super().__init__(message)


class RuleParseError(ParseError):
    def __init__(self, message: str = "Unable to parse rule. Please try a different format."):
        super().__init__(message)


class AIResponseParseError(ParseError):
    pass


class FilterEvaluationError(ParseError):
    def __init__(self, message: str = "Unable to apply filter logic from AI. Please rephrase your query."):
        super().__init__(message)


# --------- Gateway / provider errors ---------

class GatewayError(DataAlchemistError):
    status_code = 502


class AIProviderError(GatewayError):
    pass


class EmptyAIResponseError(GatewayError):
    def __init__(self, message: str = "No response from AI provider"):
        super().__init__(message)


class ConfigurationError(GatewayError):
    status_code = 503


# --------- Session state ---------

class StaleChangesError(DataAlchemistError):
    status_code = 409

    def __init__(self, entity_type: str, staged_version: int, current_version: int):
        super().__init__(
            f"Staged changes for {entity_type} were computed against version {staged_version}, "
            f"but the dataset is now at version {current_version}. Please regenerate them."
        )
        self.entity_type = entity_type
        self.staged_version = staged_version
        self.current_version = current_version


class NoStagedChangesError(DataAlchemistError):
    status_code = 409

    def __init__(self, entity_type: str):
        super().__init__(f"No staged changes for {entity_type}")
        self.entity_type = entity_type
