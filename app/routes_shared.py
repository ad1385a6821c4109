from datetime import datetime, timezone
from math import ceil
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def api_success(data: Any = None, message: str = "Success", *, status_code: int = 200,
                warning: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"status": "success", "message": message, "timestamp": _timestamp()}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if warning:
        body["warning"] = warning
    return JSONResponse(body, status_code=status_code)


def api_error(message: str, *, status_code: int = 500, errors: Optional[List[Any]] = None,
              debug_detail: Optional[str] = None, headers: Optional[dict] = None,
              code: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"status": "error", "message": message, "timestamp": _timestamp()}
    if code:
        body["code"] = code
    if errors:
        body["errors"] = jsonable_encoder(errors)
    if debug_detail:
        body["debug"] = debug_detail
    return JSONResponse(body, status_code=status_code, headers=headers)


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalCount": total,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
        "limit": limit,
    }


def api_paginated(items: List[Any], *, page: int, limit: int, total: int,
                  message: str = "Success") -> JSONResponse:
    body = {
        "status": "success",
        "message": message,
        "data": jsonable_encoder(items),
        "pagination": pagination_meta(page, limit, total),
        "timestamp": _timestamp(),
    }
    return JSONResponse(body)


async def paginate(db: AsyncSession, stmt, page: int, limit: int):
    """Run ``stmt`` for one page; returns ``(rows, total)``."""
    total = await db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    rows = (await db.execute(stmt.offset((page - 1) * limit).limit(limit))).scalars().all()
    return list(rows), total or 0


__all__ = ["api_success", "api_error", "api_paginated", "pagination_meta", "paginate"]
