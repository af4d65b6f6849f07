"""Error taxonomy of the signing workflow.

State-machine precondition errors are raised before anything is mutated.
The HTTP layer turns every ``SignDeskError`` into a JSON body using
``code`` and ``status_code``.
"""


class SignDeskError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidState(SignDeskError):
    code = "invalid_state"
    status_code = 409


class DuplicateSigner(SignDeskError):
    code = "duplicate_signer"
    status_code = 409

    def __init__(self, email: str):
        super().__init__(f"Signer with email {email} already exists")
        self.email = email


class AlreadySigned(SignDeskError):
    code = "already_signed"
    status_code = 409

    def __init__(self, message: str = "You have already signed this document"):
        super().__init__(message)


class AlreadySent(SignDeskError):
    code = "already_sent"
    status_code = 409

    def __init__(self, message: str = "Envelope already sent"):
        super().__init__(message)


class MissingRequiredFields(SignDeskError):
    code = "missing_required_fields"
    status_code = 422

    def __init__(self, field_ids: list[int]):
        super().__init__(f"Please fill all required fields ({len(field_ids)} remaining)")
        self.field_ids = list(field_ids)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "field_ids": self.field_ids}


class NotFound(SignDeskError):
    code = "not_found"
    status_code = 404


class ConfigurationError(SignDeskError):
    code = "configuration_error"
    status_code = 500


class CollaboratorFailure(SignDeskError):
    code = "collaborator_failure"
    status_code = 502

    def __init__(self, stage: str, cause: Exception | None = None):
        detail = f"{stage} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.stage = stage
        self.cause = cause

    def to_dict(self) -> dict:
        return {**super().to_dict(), "stage": self.stage}


class RoleMismatch(SignDeskError):
    code = "role_mismatch"
    status_code = 422

    def __init__(self, expected: int, given: int):
        super().__init__(f"Template has {expected} role(s), got {given} signer(s)")
        self.expected = expected
        self.given = given

    def to_dict(self) -> dict:
        return {**super().to_dict(), "expected": self.expected, "given": self.given}
