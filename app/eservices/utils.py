from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import request

from app.eservices.errors import ValidationFailed


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without timezone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_int(raw: object, default: int | None = None) -> int | None:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def parse_fee(raw: object) -> Decimal | None:
    """Parse a non-negative money amount with two decimal places."""
    if raw is None or raw == "":
        return Decimal("0.00")
    try:
        value = Decimal(str(raw)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def page_args(args, *, default_limit: int = 10, max_limit: int = 100) -> tuple[int, int]:
    page = max(parse_int(args.get("page"), 1) or 1, 1)
    limit = parse_int(args.get("limit"), default_limit) or default_limit
    limit = min(max(limit, 1), max_limit)
    return page, limit


def json_body() -> dict:
    """JSON object body of the current request ({} when absent)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object.")
    return data
