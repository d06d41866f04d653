"""
app/routes/config.py
Admin endpoints: combo tuning and manual team reconciliation.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.combo import ComboConfig
from app.services.config_store import get_combo_config_store, load_combo_config, save_combo_config
from app.services.team_sync import reconcile_team_totals
from database.connection import get_session

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/config", tags=["config"])


@router.get("/combo", response_model=ComboConfig)
async def get_combo_config(session: AsyncSession = Depends(get_session)) -> ComboConfig:
    """Combo tuning currently stored (defaults when no override exists)."""
    return await load_combo_config(session)


@router.put("/combo", response_model=ComboConfig)
async def put_combo_config(
    body: ComboConfig,
    session: AsyncSession = Depends(get_session),
) -> ComboConfig:
    """Replace the combo tuning override. Takes effect on the next settlement."""
    return await save_combo_config(session, body, store=get_combo_config_store())


@router.post("/team-sync")
async def trigger_team_sync(session: AsyncSession = Depends(get_session)) -> dict:
    """Run team total reconciliation now."""
    report = await reconcile_team_totals(session)
    return {"success": True, **report.to_dict()}
