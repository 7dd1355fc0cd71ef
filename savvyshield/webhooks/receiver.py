"""
Enforcement Receiver

Reference implementation of the consuming-app side of the webhook
protocol. Verified enforcements are applied to an in-process
RestrictionRegistry, which the app consults before serving a feature.

Mounted by the shield API for the app named by RECEIVER_APP_NAME so
that a single process can be exercised end to end.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError

from ..errors import WebhookVerificationError
from ..schemas import EnforcementAction, Restrictions
from .signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_webhook

logger = logging.getLogger("savvyshield.receiver")


DEFAULT_SUSPENSION_HOURS = 24


class EnforcementWebhook(BaseModel):
    """Body of POST /{app}/shield/enforce."""
    savvy_user_id: str = Field(..., min_length=1)
    action: str
    features: list[str] = Field(default_factory=list)
    duration_hours: Optional[int] = None
    reason: Optional[str] = None
    restrictions: Restrictions = Field(default_factory=Restrictions)
    risk_score: Optional[float] = None
    enforcement_id: Optional[str] = None
    case_id: Optional[str] = None


@dataclass
class ActiveRestriction:
    """One applied enforcement on a user."""
    kind: str
    reason: str
    features: list[str] = field(default_factory=list)
    restrictions: Restrictions = field(default_factory=Restrictions)
    until: Optional[datetime] = None
    enforcement_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.until is not None and now > self.until

    def covers(self, feature: str) -> bool:
        if feature in self.features or "all" in self.features:
            return True
        if feature in self.restrictions.custom:
            return True
        return feature in self.restrictions.blocked_categories()


@dataclass
class UserShieldState:
    suspension: Optional[ActiveRestriction] = None
    block: Optional[ActiveRestriction] = None
    restriction: Optional[ActiveRestriction] = None
    feature_suspension: Optional[ActiveRestriction] = None
    sessions_revoked_at: Optional[datetime] = None


@dataclass
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None
    until: Optional[datetime] = None


class RestrictionRegistry:
    """
    Per-user enforcement state held by a consuming app.

    Suspensions and blocks deny every feature until they lapse;
    soft restrictions and feature suspensions deny only the features
    they name.
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(UTC)):
        self._clock = clock
        self._users: dict[str, UserShieldState] = {}

    def state_for(self, user_id: str) -> UserShieldState:
        return self._users.setdefault(user_id, UserShieldState())

    def apply(self, webhook: EnforcementWebhook) -> bool:
        """
        Apply an enforcement.

        Returns:
            False for actions this app does not know how to apply
        """
        now = self._clock()
        state = self.state_for(webhook.savvy_user_id)

        try:
            action = EnforcementAction(webhook.action)
        except ValueError:
            logger.warning("Unknown enforcement action %r for %s", webhook.action, webhook.savvy_user_id)
            return False

        if action == EnforcementAction.OBSERVE:
            return True

        if action == EnforcementAction.TEMP_SUSPEND:
            hours = webhook.duration_hours or DEFAULT_SUSPENSION_HOURS
            state.suspension = ActiveRestriction(
                kind=action.value,
                reason="Shield enforcement - temporary suspension",
                features=list(webhook.features),
                restrictions=webhook.restrictions,
                until=now + timedelta(hours=hours),
                enforcement_id=webhook.enforcement_id,
            )
        elif action in (EnforcementAction.AUTO_BLOCK, EnforcementAction.PERMANENT_BAN):
            until = (
                now + timedelta(hours=webhook.duration_hours)
                if webhook.duration_hours and action == EnforcementAction.AUTO_BLOCK
                else None
            )
            state.block = ActiveRestriction(
                kind=action.value,
                reason="Shield enforcement - automatic block",
                features=list(webhook.features) or ["all"],
                restrictions=webhook.restrictions,
                until=until,
                enforcement_id=webhook.enforcement_id,
            )
            state.sessions_revoked_at = now
        elif action == EnforcementAction.SOFT_RESTRICT:
            state.restriction = ActiveRestriction(
                kind=action.value,
                reason="Shield enforcement - soft restrictions",
                features=list(webhook.features),
                restrictions=webhook.restrictions,
                enforcement_id=webhook.enforcement_id,
            )
        elif action == EnforcementAction.SUSPEND_FEATURES:
            state.feature_suspension = ActiveRestriction(
                kind=action.value,
                reason="Shield enforcement - feature suspension",
                features=list(webhook.features),
                restrictions=webhook.restrictions,
                enforcement_id=webhook.enforcement_id,
            )

        logger.info("Enforcement applied: %s for user %s", action.value, webhook.savvy_user_id)
        return True

    def clear(self, user_id: str) -> None:
        self._users.pop(user_id, None)

    def check_feature_access(self, user_id: str, feature: str) -> AccessDecision:
        """Whether `user_id` may use `feature` right now."""
        state = self._users.get(user_id)
        if state is None:
            return AccessDecision(allowed=True)

        now = self._clock()

        # Account-wide holds lapse on their own
        if state.suspension is not None and state.suspension.is_expired(now):
            state.suspension = None
        if state.block is not None and state.block.is_expired(now):
            state.block = None

        if state.block is not None:
            return AccessDecision(False, "Account blocked by Shield security system", state.block.until)
        if state.suspension is not None:
            return AccessDecision(False, "Account temporarily suspended", state.suspension.until)
        if state.feature_suspension is not None and state.feature_suspension.covers(feature):
            return AccessDecision(False, f"Feature '{feature}' is currently suspended")
        if state.restriction is not None and state.restriction.covers(feature):
            return AccessDecision(False, f"Feature '{feature}' is restricted")
        return AccessDecision(allowed=True)

    def status(self, user_id: str) -> dict[str, Any]:
        state = self._users.get(user_id) or UserShieldState()
        active: list[dict[str, Any]] = []
        if state.suspension is not None:
            active.append({"type": "suspension", "until": state.suspension.until})
        if state.block is not None:
            active.append({"type": "block", "until": state.block.until})
        if state.restriction is not None:
            active.append({"type": "restrictions", "features": state.restriction.features})
        if state.feature_suspension is not None:
            active.append({"type": "feature_suspend", "features": state.feature_suspension.features})
        return {
            "user_id": user_id,
            "active_enforcements": active,
            "sessions_revoked_at": state.sessions_revoked_at,
        }


def create_receiver_router(
    registry: RestrictionRegistry,
    secret: str,
    replay_window_seconds: int = 300,
    app_name: Optional[str] = None,
) -> APIRouter:
    """
    Build the receiver routes for a consuming app.

    With app_name set, requests for any other app get a 404.

    Routes:
        POST /{app}/shield/enforce
        GET  /{app}/shield/status/{user_id}
    """
    router = APIRouter(tags=["receiver"])

    def _check_app(app: str) -> None:
        if app_name and app != app_name:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown app '{app}'")

    @router.post("/{app}/shield/enforce")
    async def receive_enforcement(app: str, request: Request):
        _check_app(app)
        body = await request.body()
        try:
            verify_webhook(
                body,
                request.headers.get(SIGNATURE_HEADER),
                request.headers.get(TIMESTAMP_HEADER),
                secret,
                replay_window_ms=replay_window_seconds * 1000,
            )
        except WebhookVerificationError as e:
            logger.warning("Rejected enforcement webhook for %s: %s", app, e)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

        try:
            webhook = EnforcementWebhook.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid payload: {e}")

        applied = registry.apply(webhook)
        return {
            "success": True,
            "message": "Enforcement applied successfully" if applied else "Unknown action",
            "enforcement_id": webhook.enforcement_id,
            "case_id": webhook.case_id,
            "user_id": webhook.savvy_user_id,
            "action": webhook.action,
            "applied": applied,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @router.get("/{app}/shield/status/{user_id}")
    async def shield_status(app: str, user_id: str):
        _check_app(app)
        return {"success": True, "shield_status": registry.status(user_id)}

    return router


def require_feature(registry: RestrictionRegistry, feature: str):
    """
    FastAPI dependency factory guarding a feature route.

    The caller is identified by the X-Savvy-User-Id header; requests
    without it pass through.
    """
    async def dependency(request: Request) -> None:
        user_id = request.headers.get("X-Savvy-User-Id")
        if not user_id:
            return
        decision = registry.check_feature_access(user_id, feature)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": decision.reason, "feature": feature},
            )

    return dependency
