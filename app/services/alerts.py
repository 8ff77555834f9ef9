from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from app.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)
DEFAULT_PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
ALERT_SOURCE = "referral-rewards-engine"
VALID_CHANNELS = {"generic", "slack", "pagerduty"}
VALID_SEVERITIES = {"critical", "error", "warning", "info"}
SEVERITY_COLOR = {
    "critical": "#B42318",
    "error": "#F04438",
    "warning": "#F79009",
    "info": "#1570EF",
}


@dataclass(frozen=True)
class AlertRoute:
    channels: tuple[str, ...]
    severity: str
    escalation_tier: str


@dataclass(frozen=True)
class AlertTarget:
    channel: str
    url: str


DEFAULT_ALERT_ROUTE = AlertRoute(
    channels=("generic",),
    severity="warning",
    escalation_tier="ops_l3",
)
EVENT_ALERT_ROUTES = {
    "referral_reward_grant_failed": AlertRoute(
        channels=("pagerduty", "slack", "generic"),
        severity="error",
        escalation_tier="ops_l1",
    ),
    "referral_reward_reconciliation_backlog": AlertRoute(
        channels=("slack", "generic"),
        severity="warning",
        escalation_tier="ops_l2",
    ),
}


def _clean(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _load_policy_overrides(raw_policy: str) -> dict[str, dict[str, object]]:
    if not raw_policy:
        return {}
    try:
        parsed = json.loads(raw_policy)
    except json.JSONDecodeError:
        logger.warning("ops_alert_policy_parse_failed")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("ops_alert_policy_invalid_shape")
        return {}
    return {
        str(event_name): route
        for event_name, route in parsed.items()
        if isinstance(event_name, str) and isinstance(route, dict)
    }


def resolve_alert_route(*, event: str, policy_raw: str) -> AlertRoute:
    """Static route for ``event``, optionally overridden per event (or ``*``) by JSON policy."""
    base_route = EVENT_ALERT_ROUTES.get(event, DEFAULT_ALERT_ROUTE)
    overrides = _load_policy_overrides(policy_raw)
    override = overrides.get(event) or overrides.get("*")
    if override is None:
        return base_route

    channels = base_route.channels
    raw_channels = override.get("channels")
    if isinstance(raw_channels, list):
        picked = tuple(
            dict.fromkeys(
                _clean(channel).lower()
                for channel in raw_channels
                if _clean(channel).lower() in VALID_CHANNELS
            )
        )
        channels = picked or base_route.channels

    severity = _clean(override.get("severity")).lower()
    escalation_tier = _clean(override.get("escalation_tier"))
    return AlertRoute(
        channels=channels,
        severity=severity if severity in VALID_SEVERITIES else base_route.severity,
        escalation_tier=escalation_tier or base_route.escalation_tier,
    )


def resolve_alert_targets(*, route: AlertRoute, settings: Settings) -> list[AlertTarget]:
    generic_url = _clean(settings.ops_alert_webhook_url)
    channel_urls = {
        "generic": generic_url,
        "slack": _clean(settings.ops_alert_slack_webhook_url),
    }
    if _clean(settings.ops_alert_pagerduty_routing_key):
        channel_urls["pagerduty"] = (
            _clean(settings.ops_alert_pagerduty_events_url) or DEFAULT_PAGERDUTY_EVENTS_URL
        )

    targets = [
        AlertTarget(channel=channel, url=channel_urls[channel])
        for channel in route.channels
        if channel_urls.get(channel)
    ]
    if not targets and generic_url:
        targets.append(AlertTarget(channel="generic", url=generic_url))
    return targets


def _generic_body(
    *,
    event: str,
    payload: dict[str, object],
    sent_at: datetime,
    route: AlertRoute,
    settings: Settings,
) -> dict[str, Any]:
    return {
        "event": event,
        "payload": payload,
        "sent_at": sent_at.isoformat(),
        "severity": route.severity,
        "escalation_tier": route.escalation_tier,
        "source": ALERT_SOURCE,
    }


def _slack_body(
    *,
    event: str,
    payload: dict[str, object],
    sent_at: datetime,
    route: AlertRoute,
    settings: Settings,
) -> dict[str, Any]:
    payload_text = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return {
        "text": f"[{route.severity.upper()}][{route.escalation_tier}] {event}",
        "attachments": [
            {
                "color": SEVERITY_COLOR.get(route.severity, SEVERITY_COLOR["warning"]),
                "fields": [
                    {"title": "Environment", "value": settings.app_env, "short": True},
                    {"title": "Sent At", "value": sent_at.isoformat(), "short": True},
                    {"title": "Event", "value": event, "short": False},
                    {"title": "Payload", "value": payload_text, "short": False},
                ],
            }
        ],
    }


def _pagerduty_body(
    *,
    event: str,
    payload: dict[str, object],
    sent_at: datetime,
    route: AlertRoute,
    settings: Settings,
) -> dict[str, Any]:
    return {
        "routing_key": _clean(settings.ops_alert_pagerduty_routing_key),
        "event_action": "trigger",
        "dedup_key": f"{event}:{route.escalation_tier}",
        "payload": {
            "summary": f"[{settings.app_env}] {event}",
            "source": f"{ALERT_SOURCE}/{settings.app_env}",
            "severity": route.severity,
            "timestamp": sent_at.isoformat(),
            "component": "referral-rewards",
            "group": route.escalation_tier,
            "custom_details": {"event": event, "payload": payload},
        },
    }


CHANNEL_BODY_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "generic": _generic_body,
    "slack": _slack_body,
    "pagerduty": _pagerduty_body,
}


async def _post_json(
    *,
    client: httpx.AsyncClient,
    target: AlertTarget,
    body: dict[str, Any],
    event: str,
) -> bool:
    try:
        response = await client.post(target.url, json=body)
        response.raise_for_status()
    except httpx.HTTPError:
        logger.exception("ops_alert_delivery_failed", alert_event=event, provider=target.channel)
        return False
    return True


async def send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
    settings = get_settings()
    route = resolve_alert_route(
        event=event,
        policy_raw=_clean(settings.ops_alert_escalation_policy_json),
    )
    targets = resolve_alert_targets(route=route, settings=settings)
    if not targets:
        logger.info("ops_alert_skipped_no_targets", alert_event=event, severity=route.severity)
        return False

    sent_at = datetime.now(timezone.utc)
    delivered_to: list[str] = []
    failed_to: list[str] = []
    async with httpx.AsyncClient(timeout=5.0) as client:
        for target in targets:
            body = CHANNEL_BODY_BUILDERS[target.channel](
                event=event,
                payload=payload,
                sent_at=sent_at,
                route=route,
                settings=settings,
            )
            if await _post_json(client=client, target=target, body=body, event=event):
                delivered_to.append(target.channel)
            else:
                failed_to.append(target.channel)

    if not delivered_to:
        logger.error(
            "ops_alert_delivery_exhausted",
            alert_event=event,
            severity=route.severity,
            escalation_tier=route.escalation_tier,
            failed_to=failed_to,
        )
        return False

    logger.info(
        "ops_alert_delivered",
        alert_event=event,
        severity=route.severity,
        escalation_tier=route.escalation_tier,
        delivered_to=delivered_to,
        failed_to=failed_to,
    )
    return True
