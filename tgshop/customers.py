import logging
from typing import Optional

from tgshop.models import CreatedVia, CustomerInfo, TelegramUser

log = logging.getLogger(__name__)


def contact_fields(info: CustomerInfo, telegram_user: Optional[TelegramUser], phone: str) -> dict:
    return {
        "first_name": info.first_name or (telegram_user.first_name if telegram_user else None),
        "last_name": info.last_name or (telegram_user.last_name if telegram_user else None),
        "phone": phone,
        "email": info.email or None,
        "telegram_username": (telegram_user.username or None) if telegram_user else None,
    }


def resolve_customer(store, project_id, telegram_user: Optional[TelegramUser], info: CustomerInfo, phone=None) -> str:
    """
    Find-or-create the customer placing an order and return its id.

    With a Telegram identity the customer is looked up by
    (project, telegram_user_id); a match gets its contact fields overwritten
    by the latest submission. Without one a new customer row is always
    inserted: such checkouts never reuse an earlier record.
    """
    fields = contact_fields(info, telegram_user, phone or info.phone)

    if telegram_user is None:
        row = dict(fields, project_id=project_id, telegram_user_id=None, created_via=CreatedVia.WEB.value)
        customer_id = store.insert_customer(row)
        log.info("created customer %s (no telegram identity)", customer_id)
        return customer_id

    existing = store.find_customer(project_id, telegram_user.id)
    if existing:
        customer_id = str(existing["id"])
        store.update_customer(customer_id, fields)
        log.info("updated customer %s for telegram user %s", customer_id, telegram_user.id)
        return customer_id

    row = dict(fields, project_id=project_id, telegram_user_id=telegram_user.id, created_via=CreatedVia.TELEGRAM.value)
    customer_id = store.insert_customer(row)
    log.info("created customer %s for telegram user %s", customer_id, telegram_user.id)
    return customer_id
