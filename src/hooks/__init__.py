# -----------------------------------------------------------------------------
# SERVICE HOOKS
# -----------------------------------------------------------------------------
# Inbound webhooks from external services, mounted under /hooks.
# -----------------------------------------------------------------------------

from fastapi import APIRouter

from . import ado
from .ado import HookError

router = APIRouter()
router.include_router(ado.router, prefix="/ado", tags=["hooks"])

__all__ = ["HookError", "router"]
