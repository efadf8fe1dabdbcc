"""
titles.py

Read-only detail endpoints. Each view runs the lazy fetch gate first so a
title or show is enriched the first time someone looks at it.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from typing import Optional
import logging

from mediacanon.core.database import get_db
from mediacanon.models import SHOW, Show, ShowSeason, Title
from mediacanon.schemas import ShowView, TitleView
from mediacanon.services.lazy_fetch import LazyFetchGate

router = APIRouter()
logger = logging.getLogger(__name__)


def get_lazy_fetch_gate(request: Request) -> Optional[LazyFetchGate]:
    """The gate built at startup; None when TMDB is not configured."""
    return getattr(request.app.state, "lazy_gate", None)


def _load_show(db: Session, show_id: int) -> Optional[Show]:
    stmt = (
        select(Show)
        .where(Show.id == show_id)
        .options(
            selectinload(Show.title),
            selectinload(Show.seasons).selectinload(ShowSeason.episodes),
        )
    )
    return db.execute(stmt).scalar_one_or_none()


async def _refresh_show(db: Session, gate: Optional[LazyFetchGate], show: Show) -> None:
    if gate is None:
        return
    await gate.ensure_title(db, show.title)
    await gate.ensure_show_episodes(db, show)


@router.get("/titles/{title_id}", response_model=TitleView)
async def get_title(
    title_id: int,
    db: Session = Depends(get_db),
    gate: Optional[LazyFetchGate] = Depends(get_lazy_fetch_gate),
):
    title = db.get(Title, title_id)
    if title is None:
        raise HTTPException(status_code=404, detail="Title not found")

    if gate is not None:
        await gate.ensure_title(db, title)
        if title.type == SHOW and title.show is not None:
            show = _load_show(db, title.show.id)
            await gate.ensure_show_episodes(db, show)
    return TitleView.from_title(title)


@router.get("/shows/{show_id}", response_model=ShowView)
async def get_show(
    show_id: int,
    db: Session = Depends(get_db),
    gate: Optional[LazyFetchGate] = Depends(get_lazy_fetch_gate),
):
    show = _load_show(db, show_id)
    if show is None:
        raise HTTPException(status_code=404, detail="Show not found")
    await _refresh_show(db, gate, show)
    return ShowView.from_show(show)
