'''
API endpoints for reading fee statuses.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..models import fees as fee_models
from ..services.fee_status_service import FeeStatusService

class FeeStatusAPI:
    """
    A class to encapsulate read-only endpoints for fee statuses.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/fee-status",
            tags=["Fee Status"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/defaulters",
                self.list_defaulters,
                methods=["GET"],
                response_model=list[fee_models.FeeStatusRead])
        self.router.add_api_route(
                "/class/{class_id}",
                self.list_class_fee_status,
                methods=["GET"],
                response_model=list[fee_models.FeeStatusRead])
        self.router.add_api_route(
                "/{student_id}",
                self.get_fee_status,
                methods=["GET"],
                response_model=fee_models.FeeStatusRead)

    async def get_fee_status(
        self,
        student_id: UUID,
        fee_status_service: Annotated[FeeStatusService, Depends(FeeStatusService)],
        term: Annotated[str, Query(min_length=1, pattern=r"\S")],
        session: Annotated[str, Query(min_length=1, pattern=r"\S")]
    ) -> Any:
        """
        Retrieves the fee status of one student for one term and session.
        """
        period = fee_models.BillingPeriod(term=term, session=session)
        fee_status = await fee_status_service.get(student_id, period)
        if fee_status is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Fee status not found.")
        return fee_status

    async def list_class_fee_status(
        self,
        class_id: str,
        fee_status_service: Annotated[FeeStatusService, Depends(FeeStatusService)],
        term: Annotated[str, Query(min_length=1, pattern=r"\S")],
        session: Annotated[str, Query(min_length=1, pattern=r"\S")]
    ) -> list[Any]:
        """
        Retrieves the fee statuses of every student in a class.
        """
        period = fee_models.BillingPeriod(term=term, session=session)
        return await fee_status_service.list_for_class(class_id, period)

    async def list_defaulters(
        self,
        fee_status_service: Annotated[FeeStatusService, Depends(FeeStatusService)],
        term: Annotated[str, Query(min_length=1, pattern=r"\S")],
        session: Annotated[str, Query(min_length=1, pattern=r"\S")],
        class_id: Annotated[str | None, Query(description="Optional filter for Class ID")] = None
    ) -> list[Any]:
        """
        Retrieves unpaid, partially paid and overdue fee statuses.
        """
        period = fee_models.BillingPeriod(term=term, session=session)
        return await fee_status_service.list_defaulters(period, class_id=class_id)

# Instantiate the class and export its router
fee_status_api = FeeStatusAPI()
router = fee_status_api.router
