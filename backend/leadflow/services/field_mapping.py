"""Table-driven mapping of inbound parameters onto logical fields.

WHAT:
    A FieldMapping is an ordered list of candidate keys per logical field.
    The first candidate present with a non-empty value wins. Keys are matched
    case-insensitively after trimming.

WHY:
    CRMs, form builders and lead-ad webhooks all name the same thing
    differently (`eli_clickid` / `click_id`, `phone` / `phone_number`,
    `five9_dispo` / `disposition`). Keeping the aliases in tables makes each
    mapping testable on its own.

REFERENCES:
    - leadflow/services/postback_service.py (POSTBACK_FIELDS)
    - leadflow/services/lead_service.py (LEAD_FIELDS)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def parse_amount(raw: Any) -> Optional[Decimal]:
    """Parse "50000", "50,000.00", "$5,000" or a number; None when unparseable."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        return Decimal(str(raw))
    text = str(raw).strip().replace(",", "").replace("$", "")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        logger.warning("[FIELD_MAPPING] Ignoring unparseable amount %r", raw)
        return None
    if not value.is_finite():
        return None
    return value


def parse_lower(raw: Any) -> str:
    return str(raw).strip().lower()


def parse_currency(raw: Any) -> Optional[str]:
    """ISO 4217 style code (three letters), else None."""
    code = str(raw).strip().upper()
    if len(code) != 3 or not code.isalpha():
        logger.warning("[FIELD_MAPPING] Ignoring invalid currency %r", raw)
        return None
    return code


@dataclass(frozen=True)
class FieldSpec:
    name: str
    candidates: Tuple[str, ...]
    parser: Optional[Callable[[Any], Any]] = None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


class FieldMapping:
    """Ordered candidate keys per logical field."""

    def __init__(self, fields: Sequence[FieldSpec], ignored: Iterable[str] = ()):
        self.fields = tuple(fields)
        self.ignored = {k.lower() for k in ignored}
        self._claimed = {c.lower() for f in self.fields for c in f.candidates}

    @staticmethod
    def _normalize(params: Mapping[str, Any]) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {}
        for key, value in params.items():
            norm_key = str(key).strip().lower()
            # First occurrence wins when two keys differ only by case
            if norm_key and norm_key not in normalized:
                normalized[norm_key] = value
        return normalized

    def extract(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Return {logical_name: value} for every field that has a usable value."""
        mapped, _ = self.extract_with_extras(params)
        return mapped

    def extract_with_extras(self, params: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Return the mapped fields and the unclaimed keys as strings."""
        normalized = self._normalize(params)
        mapped: Dict[str, Any] = {}

        for field_spec in self.fields:
            for candidate in field_spec.candidates:
                raw = normalized.get(candidate.lower())
                if _is_empty(raw):
                    continue
                value = field_spec.parser(raw) if field_spec.parser else (raw.strip() if isinstance(raw, str) else str(raw))
                if value is None:
                    continue
                mapped[field_spec.name] = value
                break

        extras = {
            key: str(value).strip()
            for key, value in normalized.items()
            if key not in self._claimed
            and key not in self.ignored
            and not _is_empty(value)
            and not isinstance(value, (dict, list))
        }
        return mapped, extras


CLICK_ID_KEYS = ("eli_clickid", "click_id", "clickid", "visitor_id")

POSTBACK_FIELDS = FieldMapping([
    FieldSpec("click_id", CLICK_ID_KEYS),
    FieldSpec("event_name", ("event", "event_name", "conversion_event"), parse_lower),
    FieldSpec("value", ("value", "conversion_value", "amount"), parse_amount),
    FieldSpec("debt_amount", ("debt_amount", "how_much_debt"), parse_amount),
    FieldSpec("revenue", ("revenue",), parse_amount),
    FieldSpec("currency", ("currency", "currency_code"), parse_currency),
    FieldSpec("transaction_id", ("transaction_id", "txn_id", "order_id")),
    FieldSpec("transfer_status", ("transfer_status",)),
    FieldSpec("disposition", ("disposition", "five9_dispo", "dispo")),
    FieldSpec("stage", ("stage", "lead_stage")),
    FieldSpec("contract_sign_date", ("contract_sign_date",)),
    FieldSpec("total_debt_sign", ("total_debt_sign",), parse_amount),
    FieldSpec("gclid", ("gclid",)),
    FieldSpec("msclkid", ("msclkid",)),
    FieldSpec("fbclid", ("fbclid",)),
    FieldSpec("fbc", ("fbc", "_fbc")),
])

LEAD_FIELDS = FieldMapping(
    [
        FieldSpec("click_id", CLICK_ID_KEYS),
        FieldSpec("full_name", ("full_name", "name", "fullname")),
        FieldSpec("first_name", ("first_name", "firstname", "fname")),
        FieldSpec("last_name", ("last_name", "lastname", "lname")),
        FieldSpec("email", ("email", "email_address"), parse_lower),
        FieldSpec("phone", ("phone", "phone_number", "mobile")),
        FieldSpec("company_name", ("company_name", "company", "business_name")),
        FieldSpec("debt_amount", ("debt_amount", "how_much_debt"), parse_amount),
        FieldSpec("gclid", ("gclid",)),
        FieldSpec("msclkid", ("msclkid",)),
        FieldSpec("fbclid", ("fbclid",)),
        FieldSpec("fbc", ("fbc", "_fbc")),
        FieldSpec("fbp", ("fbp", "_fbp")),
        FieldSpec("landing_page", ("landing_page", "page_url", "page")),
    ],
    # Transport noise that should not end up in hidden_fields
    ignored=("form_id", "submit", "consent", "g-recaptcha-response"),
)
