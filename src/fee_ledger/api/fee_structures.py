'''
API endpoints for class fee structures.
'''
from typing import Annotated, Any
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..models import fees as fee_models
from ..services.fee_structure_service import FeeStructureService
from ..services.payment_service import PaymentRecorderService

class FeeStructuresAPI:
    """
    A class to encapsulate endpoints for fee structures.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/fee-structures",
            tags=["Fee Structures"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/",
                self.set_fee_structure,
                methods=["PUT"],
                response_model=fee_models.FeeStructureRead)
        self.router.add_api_route(
                "/{class_id}",
                self.get_fee_structure,
                methods=["GET"],
                response_model=fee_models.FeeStructureRead)

    async def set_fee_structure(
        self,
        structure_data: fee_models.FeeStructureCreate,
        fee_structure_service: Annotated[FeeStructureService, Depends(FeeStructureService)],
        payment_service: Annotated[PaymentRecorderService, Depends(PaymentRecorderService)]
    ) -> Any:
        """
        Creates or replaces a class fee structure, then opens a fee status
        for every active student in the class.
        """
        structure = await fee_structure_service.set_fee_structure(structure_data.model_dump())
        period = fee_models.BillingPeriod(term=structure.term, session=structure.session)
        await payment_service.open_class_fee_statuses(structure.class_id, period)
        return structure

    async def get_fee_structure(
        self,
        class_id: str,
        fee_structure_service: Annotated[FeeStructureService, Depends(FeeStructureService)],
        term: Annotated[str, Query(min_length=1, pattern=r"\S")],
        session: Annotated[str, Query(min_length=1, pattern=r"\S")]
    ) -> Any:
        """
        Retrieves the fee structure of a class for one term and session.
        """
        period = fee_models.BillingPeriod(term=term, session=session)
        structure = await fee_structure_service.get_fee_structure(class_id, period)
        if structure is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Fee structure not found.")
        return structure

# Instantiate the class and export its router
fee_structures_api = FeeStructuresAPI()
router = fee_structures_api.router
