'''
API endpoints for recording and listing fee payments.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status

from ..models import fees as fee_models
from ..services.payment_service import PaymentRecorderService

class PaymentsAPI:
    """
    A class to encapsulate endpoints for fee payments.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/payments",
            tags=["Payments"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/",
                self.record_payment,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=fee_models.PaymentReceipt)
        self.router.add_api_route(
                "/student/{student_id}",
                self.list_student_payments,
                methods=["GET"],
                response_model=list[fee_models.PaymentRead])

    async def record_payment(
        self,
        payment_data: fee_models.PaymentCreate,
        payment_service: Annotated[PaymentRecorderService, Depends(PaymentRecorderService)]
    ) -> Any:
        """
        Records a payment and returns its receipt number with the updated fee status.
        """
        return await payment_service.record_payment_for_api(payment_data.model_dump())

    async def list_student_payments(
        self,
        student_id: UUID,
        payment_service: Annotated[PaymentRecorderService, Depends(PaymentRecorderService)],
        term: Annotated[str | None, Query(pattern=r"\S", description="Optional filter for term (requires session)")] = None,
        session: Annotated[str | None, Query(pattern=r"\S", description="Optional filter for session (requires term)")] = None
    ) -> list[Any]:
        """
        Retrieves the payment history of a student, newest first.
        """
        period = None
        if term and session:
            period = fee_models.BillingPeriod(term=term, session=session)
        return await payment_service.list_payments(student_id, period)

# Instantiate the class and export its router
payments_api = PaymentsAPI()
router = payments_api.router
