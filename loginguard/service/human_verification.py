from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from loginguard.config import Settings
from loginguard.logging import get_logger, mask_email
from loginguard.service.audit import AuditAction, AuditTrail

logger = get_logger(__name__)

MISSING_TOKEN = "MISSING_TOKEN"
NETWORK_ERROR = "NETWORK_ERROR"
INVALID_RESPONSE = "INVALID_RESPONSE"
VERIFICATION_FAILED = "VERIFICATION_FAILED"
ACTION_MISMATCH = "ACTION_MISMATCH"
LOW_SCORE = "LOW_SCORE"
UNKNOWN_ERROR = "UNKNOWN_ERROR"
NOT_CONFIGURED = "NOT_CONFIGURED"


@dataclass
class VerificationResult:
    """Normalized answer from the human-verification gate.

    ``configured`` is False when the gate was skipped; such a result is
    ``valid`` but must never be reported as a genuine pass.
    """

    valid: bool
    score: float = 0.0
    action: Optional[str] = None
    error_code: Optional[str] = None
    message: str = ""
    configured: bool = True
    hostname: Optional[str] = None
    challenge_ts: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.configured

    @property
    def trust_score(self) -> Optional[float]:
        """Score worth recording, or None when no verifier was consulted."""
        return self.score if self.configured else None


class _InvalidResponse(ValueError):
    pass


def _parse_payload(payload: Any) -> dict:
    """Check the verifier reply has the documented shape."""
    if not isinstance(payload, dict):
        raise _InvalidResponse("response is not an object")
    success = payload.get("success")
    if not isinstance(success, bool):
        raise _InvalidResponse("success flag missing")
    error_codes = payload.get("error-codes", [])
    if not isinstance(error_codes, list) or not all(isinstance(c, str) for c in error_codes):
        raise _InvalidResponse("error-codes is not a list of strings")
    if not success:
        return {"success": False, "error_codes": error_codes}
    score = payload.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise _InvalidResponse("score missing")
    if not 0.0 <= float(score) <= 1.0:
        raise _InvalidResponse("score out of range")
    for name in ("action", "challenge_ts", "hostname"):
        if not isinstance(payload.get(name), str):
            raise _InvalidResponse(f"{name} missing")
    return {
        "success": True,
        "score": float(score),
        "action": payload["action"],
        "challenge_ts": payload["challenge_ts"],
        "hostname": payload["hostname"],
        "error_codes": error_codes,
    }


class HumanVerificationGate:
    """Client for the external bot-detection verifier.

    ``verify`` never raises: transport problems, bad statuses and malformed
    replies all come back as ``valid=False`` with a distinct error code, and
    the gate fails closed unless it is explicitly unconfigured.
    """

    def __init__(
        self,
        settings: Settings,
        audit: AuditTrail,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.audit = audit
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return self.settings.human_verification_configured

    async def verify(
        self,
        token: Optional[str],
        declared_action: str,
        subject_hint: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        result = await self._evaluate(token, declared_action, client_ip)
        self._audit(result, declared_action, subject_hint, client_ip, user_agent)
        return result

    async def _evaluate(
        self, token: Optional[str], declared_action: str, client_ip: Optional[str]
    ) -> VerificationResult:
        if not self.is_configured:
            logger.info("human_verification_skipped", action=declared_action)
            return VerificationResult(
                valid=True,
                score=1.0,
                action=declared_action,
                error_code=NOT_CONFIGURED,
                message="Human verification is not configured.",
                configured=False,
            )

        if not token or not token.strip():
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=MISSING_TOKEN,
                message="Human verification token is missing. Please try again.",
            )

        form = {"secret": self.settings.human_verification_secret_key, "response": token}
        if client_ip:
            form["remoteip"] = client_ip

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.human_verification_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.settings.human_verification_verify_url, data=form
                )
        except httpx.HTTPError as exc:
            # Timeouts are HTTPError subclasses and land here too
            logger.warning(
                "human_verification_network_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=NETWORK_ERROR,
                message="Unable to verify that you are human right now. Please try again.",
            )

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "human_verification_http_error", status_code=response.status_code
            )
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=f"HTTP_{response.status_code}",
                message="Human verification service returned an error. Please try again.",
            )

        try:
            parsed = _parse_payload(response.json())
        except ValueError as exc:
            logger.warning("human_verification_invalid_response", error=str(exc))
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=INVALID_RESPONSE,
                message="Human verification returned an unexpected response. Please try again.",
            )

        try:
            return self._judge(parsed, declared_action)
        except Exception as exc:
            logger.error(
                "human_verification_unexpected_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=UNKNOWN_ERROR,
                message="Human verification failed. Please try again.",
            )

    def _judge(self, parsed: dict, declared_action: str) -> VerificationResult:
        if not parsed["success"]:
            codes = parsed["error_codes"]
            return VerificationResult(
                valid=False,
                action=declared_action,
                error_code=",".join(codes) if codes else VERIFICATION_FAILED,
                message="Human verification failed. Please try again.",
            )

        score = parsed["score"]
        returned_action = parsed["action"]
        common = {
            "score": score,
            "action": returned_action,
            "hostname": parsed["hostname"],
            "challenge_ts": parsed["challenge_ts"],
        }
        if returned_action.lower() != declared_action.lower():
            return VerificationResult(
                valid=False,
                error_code=ACTION_MISMATCH,
                message="Human verification action mismatch. Please try again.",
                **common,
            )
        if score < self.settings.human_verification_min_score:
            return VerificationResult(
                valid=False,
                error_code=LOW_SCORE,
                message=f"Suspicious activity detected (Score: {score:.2f}). Please try again.",
                **common,
            )
        return VerificationResult(valid=True, message="Verified", **common)

    def _audit(
        self,
        result: VerificationResult,
        declared_action: str,
        subject_hint: Optional[str],
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if result.skipped:
            outcome = "Skipped"
        elif result.valid:
            outcome = "Passed"
        else:
            outcome = "Failed"
        detail = f"Score: {result.score:.2f}, ErrorCode: {result.error_code or 'NONE'}"
        if subject_hint:
            hint = mask_email(subject_hint) if "@" in subject_hint else subject_hint
            detail = f"{detail}, Subject: {hint}"
        try:
            self.audit.log(
                subject_hint,
                AuditAction.human_verification(outcome, declared_action),
                detail,
                result.trust_score,
                ip=client_ip,
                user_agent=user_agent,
            )
        except Exception as exc:
            logger.error("human_verification_audit_failed", error=str(exc))
