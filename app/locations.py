from typing import Optional

from sqlalchemy.orm import Session

from app.config import TipBankSettings, merge_tip_bank_settings
from app.models import Location


def get_location_tip_bank_settings(db: Session, location_id: Optional[int]) -> TipBankSettings:
    """Process defaults overlaid with the location's ``settings["tipBank"]`` JSON."""
    location = db.get(Location, location_id) if location_id is not None else None
    raw = location.settings if location and location.settings else {}
    overrides = raw.get("tipBank") if isinstance(raw, dict) else None
    return merge_tip_bank_settings(overrides if isinstance(overrides, dict) else None)
