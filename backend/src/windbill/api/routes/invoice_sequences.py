"""
Invoice number sequence settings.

Reading a sequence never creates it; the response shows the defaults a
first allocation would use.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from windbill.api.dependencies import TenantId, get_sequence_allocator, to_http_error
from windbill.api.schemas import SequenceResponse, SequenceSettingsUpdate
from windbill.domain.models import DocumentType
from windbill.exceptions import WindbillError
from windbill.services.sequences import SequenceAllocator

router = APIRouter(prefix="/invoice-sequences", tags=["invoice-sequences"])

Allocator = Annotated[SequenceAllocator, Depends(get_sequence_allocator)]


@router.get("/{document_type}", response_model=SequenceResponse)
async def get_sequence(
    document_type: DocumentType,
    tenant_id: TenantId,
    allocator: Allocator,
) -> SequenceResponse:
    """Current settings and the number the next document would receive."""
    state = await allocator.state(tenant_id, document_type)
    return SequenceResponse.from_state(state)


@router.put("/{document_type}", response_model=SequenceResponse)
async def update_sequence(
    document_type: DocumentType,
    request: SequenceSettingsUpdate,
    tenant_id: TenantId,
    allocator: Allocator,
) -> SequenceResponse:
    """Change template and/or pad width. The counter is left alone."""
    try:
        state = await allocator.update_settings(
            tenant_id,
            document_type,
            format=request.format,
            digit_count=request.digit_count,
        )
    except WindbillError as e:
        raise to_http_error(e) from e
    return SequenceResponse.from_state(state)
