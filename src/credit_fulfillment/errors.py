from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for failures that are not ordinary business outcomes."""


class ProcessorError(FulfillmentError):
    """
    The payment processor could not be reached or rejected a call.
    Always retryable.
    """


class InvalidSignatureError(FulfillmentError):
    """A processor notification failed signature verification."""


class StoreError(FulfillmentError):
    """Transient failure of the account/record store."""


class AccountNotFoundError(FulfillmentError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"account {user_id!r} does not exist")
        self.user_id = user_id
