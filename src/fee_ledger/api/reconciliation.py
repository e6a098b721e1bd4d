'''
API endpoint for triggering a reconciliation run.
'''
from typing import Annotated
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from ..common.exceptions import FeeLedgerError
from ..common.logger import log
from ..services.reconciliation_service import ReconciliationService

class ReconciliationAPI:
    """
    A class to encapsulate the reconciliation trigger.
    Runs in the background; the caller never waits on it.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/reconciliation",
            tags=["Reconciliation"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/runs",
                self.start_run,
                methods=["POST"],
                status_code=status.HTTP_202_ACCEPTED)

    @staticmethod
    async def _run(service: ReconciliationService, shards: int, dry_run: bool):
        try:
            if shards > 1:
                await service.reconcile_sharded(shards, dry_run=dry_run)
            else:
                await service.reconcile(dry_run=dry_run)
        except FeeLedgerError as e:
            # already logged and audited by the service
            log.error(f"Background reconciliation run failed: {e}")

    async def start_run(
        self,
        background_tasks: BackgroundTasks,
        reconciliation_service: Annotated[ReconciliationService, Depends(ReconciliationService)],
        shards: Annotated[int, Query(ge=1, le=64)] = 1,
        dry_run: bool = False
    ):
        """
        Schedules a reconciliation run and returns immediately.
        """
        background_tasks.add_task(self._run, reconciliation_service, shards, dry_run)
        return {"message": "Reconciliation run scheduled.", "shards": shards, "dry_run": dry_run}

# Instantiate the class and export its router
reconciliation_api = ReconciliationAPI()
router = reconciliation_api.router
