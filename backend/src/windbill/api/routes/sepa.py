"""
SEPA export endpoint.

Returns the pain.001 XML itself; the message id and the list of skipped
invoices travel in response headers.
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status

from windbill.api.dependencies import TenantId, get_sepa_service, to_http_error
from windbill.api.schemas import SepaExportRequest
from windbill.exceptions import NoEligiblePaymentsError, WindbillError
from windbill.services.sepa import SepaExportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sepa", tags=["sepa"])


@router.post(
    "/export",
    response_class=Response,
    responses={
        200: {"content": {"application/xml": {}}, "description": "pain.001.001.03 document"},
        422: {"description": "No eligible payments or invalid request"},
    },
)
async def export_sepa(
    request: SepaExportRequest,
    tenant_id: TenantId,
    service: Annotated[SepaExportService, Depends(get_sepa_service)],
) -> Response:
    """Export approved incoming invoices as one SEPA credit transfer batch."""
    try:
        result = await service.export(tenant_id, request.invoice_ids, request.execution_date)
    except NoEligiblePaymentsError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": e.message,
                "skipped": [{"invoiceId": s.invoice_id, "reason": s.reason} for s in e.skipped],
            },
        ) from e
    except WindbillError as e:
        raise to_http_error(e) from e

    skipped = [{"invoiceId": s.invoice_id, "reason": s.reason} for s in result.skipped]
    return Response(
        content=result.document,
        media_type="application/xml",
        headers={
            "X-Sepa-Message-Id": result.message_id,
            "X-Sepa-Payment-Count": str(len(result.payments)),
            "X-Sepa-Control-Sum": str(result.control_sum),
            "X-Sepa-Skipped": json.dumps(skipped, ensure_ascii=True),
            "Content-Disposition": f'attachment; filename="{result.message_id}.xml"',
        },
    )
