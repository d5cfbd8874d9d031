GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
GROUP_NOT_ACTIVE = "GROUP_NOT_ACTIVE"
ALREADY_MEMBER = "ALREADY_MEMBER"
ALREADY_IN_ANOTHER_GROUP = "ALREADY_IN_ANOTHER_GROUP"
NOT_MEMBER = "NOT_MEMBER"
NO_PENDING_REQUEST = "NO_PENDING_REQUEST"
NEW_OWNER_NOT_ACTIVE_MEMBER = "NEW_OWNER_NOT_ACTIVE_MEMBER"
ALREADY_OWNER = "ALREADY_OWNER"
OWNER_NOT_FOUND = "OWNER_NOT_FOUND"
NO_ACTIVE_OWNERSHIP = "NO_ACTIVE_OWNERSHIP"
INVALID_SPLIT_TOTAL = "INVALID_SPLIT_TOTAL"
INVALID_AMOUNT = "INVALID_AMOUNT"
SELF_TRANSFER = "SELF_TRANSFER"
INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
NO_TIP_TRANSACTION = "NO_TIP_TRANSACTION"

NOT_FOUND_CODES = {
    GROUP_NOT_FOUND,
    NOT_MEMBER,
    NO_PENDING_REQUEST,
    OWNER_NOT_FOUND,
    NO_ACTIVE_OWNERSHIP,
    NO_TIP_TRANSACTION,
}
CONFLICT_CODES = {
    GROUP_NOT_ACTIVE,
    ALREADY_MEMBER,
    ALREADY_IN_ANOTHER_GROUP,
    ALREADY_OWNER,
    NEW_OWNER_NOT_ACTIVE_MEMBER,
    INSUFFICIENT_BALANCE,
}


class TipBankError(Exception):
    """A rejected tip bank operation, identified by a stable code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        self.message = message or code
        super().__init__(f"{code}: {self.message}" if message else code)

    @property
    def status_code(self) -> int:
        if self.code in NOT_FOUND_CODES:
            return 404
        if self.code in CONFLICT_CODES:
            return 409
        return 400
