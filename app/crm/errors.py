from __future__ import annotations


class CrmError(Exception):
    """Base error for CRM service failures; `str(exc)` is the user-facing message."""


class ValidationError(CrmError):
    """Raised before any write when input violates a hierarchy or lead rule."""


class BranchSubsetError(ValidationError):
    def __init__(self, invalid_branch: str) -> None:
        self.invalid_branch = invalid_branch
        super().__init__(f"Branch {invalid_branch} is not in your assigned branches")


class EmptyBranchListError(ValidationError):
    def __init__(self) -> None:
        super().__init__("At least one branch must be assigned")


class BranchNotFoundError(ValidationError):
    def __init__(self, branch_id: str) -> None:
        self.branch_id = branch_id
        super().__init__(f"Branch {branch_id} does not exist")


class DuplicateBranchNameError(ValidationError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__("A branch with this name already exists")


class InvalidBranchNameError(ValidationError):
    pass


class DuplicateLeadError(ValidationError):
    def __init__(self, field: str, existing_lead_id: str, existing_branch_id: str | None = None) -> None:
        self.field = field
        self.existing_lead_id = existing_lead_id
        self.existing_branch_id = existing_branch_id
        message = f"Duplicate {field} found in lead {existing_lead_id}"
        if existing_branch_id:
            message += f" (branch: {existing_branch_id})"
        super().__init__(message)


class MissingRequiredFieldError(ValidationError):
    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Field '{field}' is required")


class InvalidRoleError(ValidationError):
    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Invalid role: {value}")


class ConflictError(CrmError):
    pass


class IdentityConflictError(ConflictError):
    def __init__(self) -> None:
        super().__init__("A user with this email already exists")



class PermissionDeniedError(CrmError):
    pass


class GuardError(CrmError):
    """Raised when a delete is blocked by dependent records."""


class BranchHasManagersError(GuardError):
    def __init__(self, branch_id: str) -> None:
        self.branch_id = branch_id
        super().__init__("Cannot delete branch with assigned managers")


class BranchHasActiveLeadsError(GuardError):
    def __init__(self, branch_id: str) -> None:
        self.branch_id = branch_id
        super().__init__("Cannot delete branch with active leads")


class ProfileCreationError(CrmError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to create user profile: {reason}")
