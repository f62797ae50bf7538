"""Normalize inbound payloads into tracking event drafts.

Handles three shapes:
- pixel / server collect bodies (camelCase wire format)
- storefront orders (REST webhook payload or GraphQL Order node)
- storefront refunds (REST refund payload)

Contact data is never stored in clear text: emails are lower-cased and
SHA-256 hashed, phones stripped to digits and '+' then hashed, IPs hashed.
"""
import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from urllib.parse import parse_qsl, urlparse

from ..exceptions import InvalidPayloadError
from .models import PURCHASE_EVENT, REFUND_EVENT, EntityIds, EventSource, TrackingEventDraft, clean_text
from .timestamps import parse_timestamp


logger = logging.getLogger(__name__)


CAMPAIGN_QUERY_KEYS = ("campaign_id", "campaignid", "utm_campaign_id", "fb_campaign_id", "hsa_cam")
ADSET_QUERY_KEYS = ("adset_id", "adsetid", "utm_adset_id", "fb_adset_id", "hsa_adset")
AD_QUERY_KEYS = ("ad_id", "adid", "utm_ad_id", "fb_ad_id", "hsa_ad")

CAMPAIGN_PROPERTY_KEYS = (
    "campaignId",
    "campaign_id",
    "firstTouchCampaignId",
    "first_touch_campaign_id",
    "fbCampaignId",
    "fb_campaign_id",
)
ADSET_PROPERTY_KEYS = (
    "adSetId",
    "adsetId",
    "ad_set_id",
    "adset_id",
    "firstTouchAdSetId",
    "firstTouchAdsetId",
    "first_touch_adset_id",
    "fbAdsetId",
    "fb_adset_id",
)
AD_PROPERTY_KEYS = (
    "adId",
    "ad_id",
    "firstTouchAdId",
    "first_touch_ad_id",
    "fbAdId",
    "fb_ad_id",
)

# Checkout note attributes written by storefront tracking scripts.
CAMPAIGN_NOTE_KEYS = ("_tw_campaign_id", "_tw_ft_campaign_id", "tw_campaign_id", *CAMPAIGN_QUERY_KEYS)
ADSET_NOTE_KEYS = ("_tw_adset_id", "_tw_ft_adset_id", "tw_adset_id", *ADSET_QUERY_KEYS)
AD_NOTE_KEYS = ("_tw_ad_id", "_tw_ft_ad_id", "tw_ad_id", *AD_QUERY_KEYS)
CLICK_ID_NOTE_KEYS = ("_tw_click_id", "_tw_ft_click_id", "tw_click_id", "fbclid")
FBC_NOTE_KEYS = ("_tw_fbc", "_tw_first_fbc", "tw_fbc", "fbc")
FBP_NOTE_KEYS = ("_tw_fbp", "tw_fbp", "fbp", "_fbp")
EMAIL_NOTE_KEYS = ("_tw_email", "email")


def sha256_hex(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: Any) -> Optional[str]:
    if not isinstance(email, str):
        return None
    return email.strip().lower() or None


def normalize_phone(phone: Any) -> Optional[str]:
    if phone is None:
        return None
    return re.sub(r"[^\d+]", "", str(phone)) or None


def hash_email(email: Any) -> Optional[str]:
    return sha256_hex(normalize_email(email))


def read_query_param(url: Optional[str], keys: Sequence[str]) -> Optional[str]:
    """First non-empty query parameter among keys (case-insensitive names).

    Args:
        url: Absolute or relative URL
        keys: Parameter names in order of preference

    Returns:
        Parameter value or None
    """
    if not url or "?" not in url:
        return None

    try:
        params = parse_qsl(urlparse(url).query, keep_blank_values=False)
    except ValueError as exc:
        logger.warning("Failed to parse URL %s: %s", url[:100], exc)
        return None

    lowered: dict[str, str] = {}
    for name, value in params:
        lowered.setdefault(name.strip().lower(), value)

    for key in keys:
        value = clean_text(lowered.get(key.lower()))
        if value:
            return value
    return None


def entity_ids_from_url(url: Optional[str]) -> EntityIds:
    return EntityIds(
        campaign_id=read_query_param(url, CAMPAIGN_QUERY_KEYS),
        adset_id=read_query_param(url, ADSET_QUERY_KEYS),
        ad_id=read_query_param(url, AD_QUERY_KEYS),
    )


def _first_clean(mapping: dict, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = clean_text(mapping.get(key))
        if value:
            return value
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def draft_from_collect_payload(
    store_id: str,
    body: dict,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> TrackingEventDraft:
    """Build a draft from a pixel or server collect body.

    Entity ids come from explicit fields first, then well-known property keys,
    then the page URL query string. A missing eventId gets a generated one.

    Args:
        store_id: Owning store
        body: Decoded JSON body
        ip: Client IP (hashed before storage)
        user_agent: Client user agent

    Raises:
        InvalidPayloadError: if the body is not an object, eventName is missing,
            or eventTime is present but unparseable
    """
    if not isinstance(body, dict):
        raise InvalidPayloadError("body must be a JSON object", "collect payload")
    if not clean_text(store_id):
        raise InvalidPayloadError("store_id is required", "collect payload")

    event_name = clean_text(body.get("eventName"))
    if not event_name:
        raise InvalidPayloadError("eventName is required", "collect payload")

    raw_time = body.get("eventTime")
    if raw_time:
        occurred_at = parse_timestamp(raw_time)
        if occurred_at is None:
            raise InvalidPayloadError(f"unparseable eventTime {raw_time!r}", "collect payload")
    else:
        occurred_at = datetime.now(timezone.utc)

    properties = body.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    user = body.get("user")
    if not isinstance(user, dict):
        user = {}

    page_url = clean_text(body.get("pageUrl"))
    from_url = entity_ids_from_url(page_url)

    return TrackingEventDraft(
        store_id=store_id,
        event_name=event_name,
        event_id=clean_text(body.get("eventId")) or str(uuid.uuid4()),
        source=body.get("source") or EventSource.BROWSER,
        occurred_at=occurred_at,
        page_url=page_url,
        referrer=body.get("referrer"),
        session_id=body.get("sessionId"),
        click_id=body.get("clickId"),
        fbp=body.get("fbp"),
        fbc=body.get("fbc"),
        external_id=user.get("externalId"),
        email_hash=hash_email(user.get("email")),
        phone_hash=sha256_hex(normalize_phone(user.get("phone"))),
        ip_hash=sha256_hex(clean_text(ip)),
        user_agent=user_agent,
        value=_number(body.get("value")) if not isinstance(body.get("value"), str) else None,
        currency=body.get("currency"),
        order_id=body.get("orderId"),
        campaign_id=clean_text(body.get("campaignId"))
        or _first_clean(properties, CAMPAIGN_PROPERTY_KEYS)
        or from_url.campaign_id,
        adset_id=clean_text(body.get("adSetId"))
        or _first_clean(properties, ADSET_PROPERTY_KEYS)
        or from_url.adset_id,
        ad_id=clean_text(body.get("adId"))
        or _first_clean(properties, AD_PROPERTY_KEYS)
        or from_url.ad_id,
        payload=properties or None,
    )


# ----------------------------------------------------------------------
# Storefront orders and refunds
# ----------------------------------------------------------------------


def _note_attribute(payload: dict, keys: Sequence[str]) -> Optional[str]:
    attributes = payload.get("note_attributes") or payload.get("customAttributes") or []
    if not isinstance(attributes, list):
        return None

    wanted = {key.lower() for key in keys}
    for attribute in attributes:
        if not isinstance(attribute, dict):
            continue
        name = str(attribute.get("name") or attribute.get("key") or "").strip().lower()
        if name in wanted:
            value = clean_text(str(attribute.get("value") or ""))
            if value:
                return value
    return None


def _candidate_urls(payload: dict) -> list[str]:
    """URLs that may carry click or entity parameters, most specific first."""
    urls = [
        payload.get("landing_site"),
        payload.get("order_status_url"),
        payload.get("landing_site_ref"),
        payload.get("referring_site"),
    ]
    journey = payload.get("customerJourneySummary") or {}
    for visit_key in ("lastVisit", "firstVisit"):
        visit = journey.get(visit_key) or {}
        urls.extend([visit.get("landingPage"), visit.get("referrerUrl")])
    return [url for url in urls if isinstance(url, str) and url]


def _url_param(payload: dict, keys: Sequence[str]) -> Optional[str]:
    for url in _candidate_urls(payload):
        value = read_query_param(url, keys)
        if value:
            return value
    return None


def click_id_from_fbc(fbc: Optional[str]) -> Optional[str]:
    """fb.<subdomain>.<creation time>.<click id> -> click id."""
    if not fbc:
        return None
    parts = fbc.strip().split(".")
    if len(parts) < 4:
        return None
    return ".".join(parts[3:]) or None


def _storefront_signals(payload: dict, occurred_at: datetime) -> dict:
    click_id = (
        _note_attribute(payload, CLICK_ID_NOTE_KEYS)
        or _url_param(payload, ("fbclid",))
        or click_id_from_fbc(_url_param(payload, ("fbc",)))
    )

    fbc = _note_attribute(payload, FBC_NOTE_KEYS) or _url_param(payload, ("fbc",))
    if not fbc and click_id:
        fbc = f"fb.1.{int(occurred_at.timestamp())}.{click_id}"

    customer = payload.get("customer") or {}
    email_hash = (
        hash_email(payload.get("email"))
        or hash_email(customer.get("email"))
        or hash_email(_note_attribute(payload, EMAIL_NOTE_KEYS))
    )

    return {
        "click_id": click_id,
        "fbc": fbc,
        "fbp": _note_attribute(payload, FBP_NOTE_KEYS) or _url_param(payload, ("fbp",)),
        "email_hash": email_hash,
    }


def _storefront_entity_ids(payload: dict) -> EntityIds:
    return EntityIds(
        campaign_id=_url_param(payload, CAMPAIGN_QUERY_KEYS)
        or _note_attribute(payload, CAMPAIGN_NOTE_KEYS),
        adset_id=_url_param(payload, ADSET_QUERY_KEYS)
        or _note_attribute(payload, ADSET_NOTE_KEYS),
        ad_id=_url_param(payload, AD_QUERY_KEYS) or _note_attribute(payload, AD_NOTE_KEYS),
    )


def _storefront_id(value: Any) -> Optional[str]:
    """Numeric id from REST ids or GraphQL gids (gid://shopify/Order/123)."""
    text = clean_text(value)
    if text and text.startswith("gid://"):
        return text.rsplit("/", 1)[-1] or None
    return text


def _storefront_time(payload: dict, kind: str) -> datetime:
    raw_time = payload.get("created_at") or payload.get("createdAt")
    if not raw_time:
        return datetime.now(timezone.utc)
    occurred_at = parse_timestamp(raw_time)
    if occurred_at is None:
        raise InvalidPayloadError(f"unparseable created_at {raw_time!r}", kind)
    return occurred_at


def draft_from_shopify_order(store_id: str, order: dict) -> TrackingEventDraft:
    """Build a Purchase draft from a storefront order.

    Accepts both the REST webhook payload (snake_case) and the GraphQL Order
    node (createdAt, totalPriceSet, customerJourneySummary).

    Raises:
        InvalidPayloadError: if the order has no id
    """
    if not isinstance(order, dict):
        raise InvalidPayloadError("order must be a JSON object", "storefront order")

    order_id = _storefront_id(order.get("id"))
    if not order_id:
        raise InvalidPayloadError("order id is required", "storefront order")

    occurred_at = _storefront_time(order, "storefront order")

    price_set = (order.get("totalPriceSet") or {}).get("shopMoney") or {}
    value = _number(order.get("total_price"))
    if value is None:
        value = _number(price_set.get("amount"))
    currency = order.get("currency") or price_set.get("currencyCode") or "USD"

    entity_ids = _storefront_entity_ids(order)
    return TrackingEventDraft(
        store_id=store_id,
        event_name=PURCHASE_EVENT,
        event_id=f"shopify-order-{order_id}",
        source=EventSource.SHOPIFY,
        occurred_at=occurred_at,
        value=value if value is not None else 0.0,
        currency=currency,
        order_id=order_id,
        campaign_id=entity_ids.campaign_id,
        adset_id=entity_ids.adset_id,
        ad_id=entity_ids.ad_id,
        payload={
            "source": "shopify_order",
            "order_name": order.get("name"),
            "financial_status": order.get("financial_status"),
            "landing_site": order.get("landing_site"),
            "referring_site": order.get("referring_site"),
        },
        **_storefront_signals(order, occurred_at),
    )


def refund_amount(refund: dict) -> float:
    """Refunded amount: refund transactions, else line item subtotals."""
    transactions = refund.get("transactions") or []
    refunded = [
        _number(txn.get("amount")) or 0.0
        for txn in transactions
        if isinstance(txn, dict) and str(txn.get("kind") or "").lower() == "refund"
    ]
    if refunded:
        return round(sum(refunded), 2)

    lines = refund.get("refund_line_items") or []
    return round(
        sum(_number(line.get("subtotal")) or 0.0 for line in lines if isinstance(line, dict)),
        2,
    )


def draft_from_shopify_refund(
    store_id: str, order_id: Optional[str], refund: dict
) -> TrackingEventDraft:
    """Build a Refund draft whose value is the refunded amount.

    Args:
        store_id: Owning store
        order_id: Refunded order (falls back to refund["order_id"])
        refund: REST refund payload

    Raises:
        InvalidPayloadError: if neither a refund id nor an order id is known
    """
    if not isinstance(refund, dict):
        raise InvalidPayloadError("refund must be a JSON object", "storefront refund")

    order_id = _storefront_id(order_id) or _storefront_id(refund.get("order_id"))
    refund_id = _storefront_id(refund.get("id"))
    if not (refund_id or order_id):
        raise InvalidPayloadError("refund id or order id is required", "storefront refund")

    occurred_at = _storefront_time(refund, "storefront refund")

    currency = refund.get("currency")
    if not currency:
        currency = next(
            (
                txn.get("currency")
                for txn in refund.get("transactions") or []
                if isinstance(txn, dict) and txn.get("currency")
            ),
            "USD",
        )

    entity_ids = _storefront_entity_ids(refund)
    return TrackingEventDraft(
        store_id=store_id,
        event_name=REFUND_EVENT,
        event_id=f"shopify-refund-{refund_id or order_id}",
        source=EventSource.SHOPIFY,
        occurred_at=occurred_at,
        value=refund_amount(refund),
        currency=currency,
        order_id=order_id,
        campaign_id=entity_ids.campaign_id,
        adset_id=entity_ids.adset_id,
        ad_id=entity_ids.ad_id,
        payload={"source": "shopify_refund", "refund_id": refund_id, "order_id": order_id},
        **_storefront_signals(refund, occurred_at),
    )
