"""Typed marketplace errors.

Each error is an HTTPException so routers let FastAPI render it directly,
while services and tests can still catch the specific type.
"""

from fastapi import HTTPException


class InvalidTransition(HTTPException):
    """Requested status change is not permitted from the current status.

    Recoverable: the caller re-reads the project and decides again.
    """

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            status_code=409,
            detail=f"Cannot transition from {current} to {requested}",
        )


class OfferNotPending(HTTPException):
    """Offer is no longer pending; a concurrent actor got there first."""

    def __init__(self, offer_id: object, status: str) -> None:
        self.offer_id = offer_id
        self.status = status
        super().__init__(
            status_code=409,
            detail=f"Offer {offer_id} is {status}, not pending",
        )


class UnauthorizedActor(HTTPException):
    def __init__(self, detail: str = "Not a party to this project") -> None:
        super().__init__(status_code=403, detail=detail)


class GatewayUnavailable(HTTPException):
    """Payment gateway could not be reached or answered garbage. No state was changed."""

    def __init__(self, detail: str = "Payment gateway unavailable") -> None:
        super().__init__(status_code=502, detail=detail)


class LedgerPairMismatch(HTTPException):
    """Ledger legs for one economic event are missing or inconsistent.

    Fatal: requires manual remediation. Never auto-healed.
    """

    def __init__(self, reference: str, found: int, detail: str | None = None) -> None:
        self.reference = reference
        self.found = found
        super().__init__(
            status_code=500,
            detail=detail or f"Ledger pair mismatch for {reference}: found {found} entries, expected 2",
        )


class NegotiationChainCorrupt(HTTPException):
    """Reconstructed offer chain has non-increasing rounds or a cycle."""

    def __init__(self, offer_id: object, detail: str) -> None:
        self.offer_id = offer_id
        super().__init__(status_code=500, detail=f"Negotiation chain at offer {offer_id}: {detail}")
