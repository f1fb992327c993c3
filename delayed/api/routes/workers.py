"""
Worker administration routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from delayed.api.auth import CurrentOperator
from delayed.constants import API_V1_PREFIX
from delayed.db import get_async_session
from delayed.db.repository import JobRepository
from delayed.errors import LeaseFormatError
from delayed.identity import WorkerIdentity
from delayed.types.api import ClearLocksRequest, ClearLocksResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/workers", tags=["Workers"])


@router.post(
    "/clear-locks",
    response_model=ClearLocksResponse,
    summary="Release a worker's leases",
    description="Release every lease held by a worker that is known to be gone.",
)
async def clear_locks(
    request: ClearLocksRequest,
    operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> ClearLocksResponse:
    """
    Release the leases of a worker.

    Raises:
        HTTPException: If the worker name is not a worker identity.
    """
    try:
        worker = WorkerIdentity.parse(request.worker_name)
    except LeaseFormatError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    released = await JobRepository(session).clear_locks(worker)
    await session.commit()

    logger.info(
        "Cleared worker leases",
        extra={"worker_name": worker.name, "released": released, "operator": operator.subject},
    )
    return ClearLocksResponse(worker_name=worker.name, released=released)
