"""
Voucher Escrow - Auto-Release Operator API

Management surface for the reconciliation service.

    GET  /admin/auto-release           service status
    POST /admin/auto-release           {"action": ..., "listingId": ...}

Response codes:
    200  success, or a benign no-op (listing already terminal)
    400  missing listingId, unknown action, malformed body
    500  init/start failure, failed release or refund
"""

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from voucher_escrow.core.types import ListingId
from voucher_escrow.dependencies import get_controller
from voucher_escrow.models.release import FailureKind, OperationResult, OutcomeKind, ReleaseOutcome
from voucher_escrow.services.controller import ServiceController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/auto-release", tags=["auto-release"])


class AutoReleaseAction(str, Enum):
    INIT = "init"
    START = "start"
    STOP = "stop"
    STATUS = "status"
    RELEASE = "release"
    REFUND = "refund"
    SCAN_PENDING = "scan-pending"


ACTION_ALIASES = {
    "scanPending": AutoReleaseAction.SCAN_PENDING,
    "process-pending": AutoReleaseAction.SCAN_PENDING,
}

LISTING_ACTIONS = (AutoReleaseAction.RELEASE, AutoReleaseAction.REFUND)


class AutoReleaseRequest(BaseModel):
    """Operator command."""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    listing_id: Optional[ListingId] = Field(None, alias="listingId")


class AutoReleaseResponse(BaseModel):
    """Success/failure envelope returned for every action."""
    success: bool
    message: str
    failure: Optional[FailureKind] = None
    data: Optional[dict[str, Any]] = None


def envelope(
    status_code: int,
    success: bool,
    message: str,
    failure: Optional[FailureKind] = None,
    data: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    body = AutoReleaseResponse(success=success, message=message, failure=failure, data=data)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def parse_action(raw: str) -> Optional[AutoReleaseAction]:
    if raw in ACTION_ALIASES:
        return ACTION_ALIASES[raw]
    try:
        return AutoReleaseAction(raw)
    except ValueError:
        return None


def _from_operation(result: OperationResult) -> JSONResponse:
    return envelope(
        200 if result.success else 500,
        result.success,
        result.message,
        failure=result.failure,
        data=result.data,
    )


def _from_outcome(outcome: ReleaseOutcome) -> JSONResponse:
    data = outcome.model_dump(mode="json", exclude_none=True)
    if outcome.kind == OutcomeKind.FAILED:
        return envelope(500, False, outcome.message, failure=outcome.failure, data=data)
    # Skips other than "already terminal" (not confirmed, in flight) are
    # reported as unsuccessful but are not server errors.
    return envelope(200, outcome.is_benign, outcome.message, data=data)


@router.get("")
async def get_status(controller: ServiceController = Depends(get_controller)):
    """Current service status."""
    status = controller.status()
    return envelope(200, True, f"Service {status.state.value}", data=status.model_dump(mode="json"))


@router.post("")
async def run_action(
    request: AutoReleaseRequest,
    controller: ServiceController = Depends(get_controller),
):
    """Run an operator action against the reconciliation service."""
    action = parse_action(request.action)
    if action is None:
        return envelope(400, False, f"Unknown action: {request.action}")

    if action in LISTING_ACTIONS and request.listing_id is None:
        return envelope(400, False, f"listingId is required for {action.value}")

    logger.info(f"[SERVICE] Operator action {action.value}" + (f" #{request.listing_id}" if request.listing_id else ""))

    if action == AutoReleaseAction.INIT:
        return _from_operation(await controller.init())
    if action == AutoReleaseAction.START:
        return _from_operation(await controller.start())
    if action == AutoReleaseAction.STOP:
        return _from_operation(await controller.stop())
    if action == AutoReleaseAction.SCAN_PENDING:
        return _from_operation(await controller.scan_pending())
    if action == AutoReleaseAction.RELEASE:
        return _from_outcome(await controller.manual_release(request.listing_id))
    if action == AutoReleaseAction.REFUND:
        return _from_outcome(await controller.manual_refund(request.listing_id))

    status = controller.status()
    return envelope(200, True, f"Service {status.state.value}", data=status.model_dump(mode="json"))
