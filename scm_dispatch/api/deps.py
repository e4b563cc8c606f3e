from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from scm_dispatch.database import get_db
from scm_dispatch.jobs.assignment_retry import AssignmentRetryScheduler
from scm_dispatch.services.carrier_assignment_service import CarrierAssignmentService
from scm_dispatch.services.quote_collector import QuoteCollector


# Services are built once in the application lifespan and kept on app.state

def get_assignment_service(request: Request) -> CarrierAssignmentService:
    return request.app.state.assignment_service


def get_retry_scheduler(request: Request) -> AssignmentRetryScheduler:
    return request.app.state.retry_scheduler


def get_quote_collector(request: Request) -> QuoteCollector:
    return request.app.state.quote_collector


DB = Annotated[AsyncSession, Depends(get_db)]
AssignmentServiceDep = Annotated[CarrierAssignmentService, Depends(get_assignment_service)]
RetrySchedulerDep = Annotated[AssignmentRetryScheduler, Depends(get_retry_scheduler)]
QuoteCollectorDep = Annotated[QuoteCollector, Depends(get_quote_collector)]
