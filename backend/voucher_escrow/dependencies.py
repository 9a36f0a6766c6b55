"""Dependency injection helpers for FastAPI."""

from fastapi import HTTPException, Request, status

from voucher_escrow.services.controller import ServiceController


def get_controller(request: Request) -> ServiceController:
    """The reconciliation service owned by the running app."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation service not configured",
        )
    return controller
