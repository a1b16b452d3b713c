from datetime import datetime, time, timezone

ORDER_NUMBER_PREFIX = "ORD"


def utc_day_bounds(now=None):
    """[00:00:00.000Z, 23:59:59.999Z] of the current UTC date."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    day = now.astimezone(timezone.utc).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=timezone.utc)
    return start, end


def format_order_number(day, sequence):
    return f"{ORDER_NUMBER_PREFIX}-{day:%Y%m%d}-{sequence:04d}"


def generate_order_number(store, project_id, now=None):
    """
    ORD-YYYYMMDD-NNNN where NNNN is the number of the project's orders
    created today (UTC) plus one. The sequence is reserved through the
    store's per-day counter, so two checkouts never get the same value.
    """
    start, end = utc_day_bounds(now)
    sequence = store.reserve_order_sequence(project_id, start, end)
    return format_order_number(start, sequence)
