"""
Batch action endpoint for invoices, documents and invoice emails.

The whole request is validated before any item is touched; after that,
item failures are reported in the response instead of failing the call.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from windbill.api.dependencies import TenantId, get_batch_service, to_http_error
from windbill.api.schemas import BatchRequest, BatchResponse
from windbill.exceptions import WindbillError
from windbill.services.batch import BatchActionService, BatchEntity

router = APIRouter(prefix="/batch", tags=["batch"])


@router.post("/{entity}", response_model=BatchResponse)
async def run_batch(
    entity: BatchEntity,
    request: BatchRequest,
    tenant_id: TenantId,
    service: Annotated[BatchActionService, Depends(get_batch_service)],
) -> BatchResponse:
    try:
        outcome = await service.run(tenant_id, entity, request.action, request.ids)
    except WindbillError as e:
        raise to_http_error(e) from e
    return BatchResponse.from_outcome(outcome)
