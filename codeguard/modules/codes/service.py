"""
Access code service: issuance, validation and management.

Validation pipeline (validate_code):
1. Rate limiter gate (a SYSTEM_ERROR decision fails open)
2. Attack signature scan of the submitted code
3. Lookup: HMAC signature match in constant time, then PBKDF2 verification
4. Usability: not expired, active, under its usage cap
5. Composite risk assessment (>= 80 suspends the code, >= 90 also blocks the IP)
6. Under the code's lock: re-check, count the use, update the profile

Errors raised inside the pipeline are converted into a ValidationResult; the
caller never sees an exception from validate_code. Issuance is the opposite:
it fails closed and raises.

CRITICAL SECURITY REQUIREMENTS:
1. The raw code is returned once, by issue_code, and never stored or logged
2. Every denial is audit-logged (secrets redacted)
3. Internal exception text never crosses the boundary
"""

import csv
import io
import json
import logging
import math
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from codeguard.core.config import CodePolicy, RiskPolicy, SweepPolicy
from codeguard.core.errors import (
    CodeGuardError,
    NotFoundError,
    RateLimitError,
    RiskBlockedError,
    SystemFaultError,
    ThreatDetectedError,
    ValidationError,
)
from codeguard.core.security import CryptoProvider, generate_identifier
from codeguard.core.sentry import capture_business_error
from codeguard.core.timeutil import Clock, utcnow
from codeguard.models.access_code import (
    AccessCode,
    AccessRecord,
    CodeSearchFilters,
    CodeStats,
    CodeStatus,
    CodeView,
    IssuedCode,
    IssueOptions,
    RiskAssessment,
    RiskLevel,
    RiskProfile,
    SecurityLevel,
    StatusPatch,
    SweepReport,
    SystemStats,
    ValidationContext,
    ValidationResult,
)
from codeguard.models.audit import AlertSeverity
from codeguard.models.rate_limit import RateLimitRequest, SignatureMatch, ThreatSeverity
from codeguard.modules.audit.logger import AuditLogger
from codeguard.modules.codes.generator import CodeGenerator
from codeguard.modules.codes.repository import CodeRepository
from codeguard.modules.codes.risk import RiskAssessor
from codeguard.modules.codes.sweep import AdaptiveSweep
from codeguard.modules.detection.signatures import AttackSignatureDetector
from codeguard.modules.ratelimit.limiter import RateLimiter

logger = logging.getLogger(__name__)

EXPORT_FIELDS = [
    "code_id",
    "institution_id",
    "type",
    "status",
    "is_active",
    "created_at",
    "expires_at",
    "usage_count",
    "max_usage",
    "security_level",
    "risk_score",
    "overall_risk",
    "last_accessed",
]

FAILURE_HISTORY_LIMIT = 200

# Audit activity for each denial, keyed by error code
DENIAL_ACTIVITIES = {
    "RATE_LIMIT_EXCEEDED": "RATE_LIMIT_EXCEEDED",
    "LOCKED_OUT": "RATE_LIMIT_EXCEEDED",
    "BLOCKED": "RATE_LIMIT_EXCEEDED",
    "SUSPICIOUS_BEHAVIOR": "RATE_LIMIT_EXCEEDED",
    "ATTACK_DETECTED": "VALIDATION_THREAT_DETECTED",
    "CODE_NOT_FOUND": "INVALID_CODE",
    "RISK_BLOCKED": "HIGH_RISK_CODE_BLOCKED",
    "SYSTEM_ERROR": "VALIDATION_ERROR",
}


class CodeService:
    """
    Issues, validates and manages access codes.

    Usage:
        service = CodeService(crypto, rate_limiter, audit)
        issued = service.issue_code("ORG1", "standard")
        result = service.validate_code(issued.raw_code, "ORG1", ValidationContext(ip_address="203.0.113.7"))
        if result.is_valid:
            ...
    """

    def __init__(
        self,
        crypto: CryptoProvider,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        detector: Optional[AttackSignatureDetector] = None,
        code_policy: Optional[CodePolicy] = None,
        risk_policy: Optional[RiskPolicy] = None,
        sweep_policy: Optional[SweepPolicy] = None,
        repository: Optional[CodeRepository] = None,
        clock: Clock = utcnow
    ):
        self.crypto = crypto
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.detector = detector or rate_limiter.detector
        self.code_policy = code_policy or CodePolicy()
        self.risk_policy = risk_policy or RiskPolicy()
        self.sweep_policy = sweep_policy or SweepPolicy()
        self.repository = repository if repository is not None else CodeRepository()
        self.generator = CodeGenerator(self.code_policy)
        self.assessor = RiskAssessor(self.risk_policy, self.sweep_policy, rate_limiter, audit)
        self.sweep = AdaptiveSweep(
            self.repository,
            self.assessor,
            self.sweep_policy,
            self.code_policy,
            audit,
            clock=clock,
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_code(
        self,
        institution_id: str,
        code_type: str = "standard",
        custom_code: Optional[str] = None,
        options: Optional[IssueOptions] = None
    ) -> IssuedCode:
        """
        Issue a new access code.

        Args:
            institution_id: Owning institution
            code_type: Code type ("admin" and "system" are privileged)
            custom_code: Caller-chosen secret (must pass validate_strength)
            options: Length, expiry, usage cap, creator context, metadata

        Returns:
            IssuedCode carrying the raw code (the only time it is returned)

        Raises:
            ValidationError: Missing fields, weak or duplicate custom code, bad length
            SystemFaultError: Unexpected fault (nothing is stored)
        """
        options = options or IssueOptions()

        if not institution_id or not str(institution_id).strip():
            raise ValidationError("institution_id is required", message_key="code.issue.institution_required")
        if not code_type or not str(code_type).strip():
            raise ValidationError("type is required", message_key="code.issue.type_required")

        if custom_code is not None:
            report = self.generator.validate_strength(custom_code)
            if not report.valid:
                raise ValidationError(
                    "Custom code does not meet strength requirements",
                    message_key="code.issue.weak_code",
                    details={"errors": report.errors}
                )
            raw_code = custom_code
        else:
            raw_code = self.generator.generate_code(options.length)

        try:
            return self._issue(institution_id, code_type, raw_code, custom_code is not None, options)
        except CodeGuardError:
            raise
        except Exception as e:
            capture_business_error(
                e,
                context={"operation": "issue_code", "institution_id": institution_id, "type": code_type}
            )
            raise SystemFaultError("Code issuance failed", message_key="code.issue.failed") from e

    def _issue(
        self,
        institution_id: str,
        code_type: str,
        raw_code: str,
        is_custom: bool,
        options: IssueOptions
    ) -> IssuedCode:
        now = self._clock()
        signature = self.crypto.signer.sign(raw_code)

        if is_custom and self.repository.find_by_signature(signature, institution_id):
            raise ValidationError(
                "Code already exists for this institution",
                message_key="code.issue.duplicate"
            )

        expiry_hours = options.expiry_hours or self.code_policy.expiry_hours
        privileged = code_type.lower() in {t.lower() for t in self.code_policy.privileged_types}

        metadata = dict(options.metadata)
        if options.created_by:
            metadata["created_by"] = options.created_by

        record = AccessCode(
            code_id=generate_identifier("CODE_"),
            institution_id=institution_id,
            type=code_type,
            created_at=now,
            expires_at=now + timedelta(hours=expiry_hours),
            max_usage=options.max_usage,
            security_level=SecurityLevel.HIGH if privileged else SecurityLevel.STANDARD,
            risk_profile=RiskProfile(factors=["NEW_CODE"], last_updated=now),
            code_length=len(raw_code),
            metadata=metadata,
            secret_hash=self.crypto.hasher.hash(raw_code),
            signature=signature,
        )

        matches = self.detector.scan(raw_code, field="code")
        if matches:
            self._apply_issue_threat(record, matches, options, now)

        self.repository.add(record)

        self._safe_audit(
            "CODE_CREATED",
            user_id=options.created_by,
            ip_address=options.ip_address,
            user_agent=options.user_agent,
            session_id=options.session_id,
            data={
                "code_id": record.code_id,
                "institution_id": institution_id,
                "type": code_type,
                "security_level": record.security_level.value,
                "status": record.status.value,
                "expires_at": record.expires_at.isoformat(),
                "custom": is_custom,
            },
        )

        if privileged:
            self._safe_alert(
                "HIGH_SECURITY_CODE_CREATED",
                f"High security {code_type} code created for {institution_id}",
                AlertSeverity.HIGH,
                {"code_id": record.code_id, "institution_id": institution_id, "type": code_type},
            )

        logger.info(
            f"Issued {code_type} code for {institution_id}",
            extra={"code_id": record.code_id, "institution_id": institution_id, "code_status": record.status.value}
        )

        return IssuedCode(
            code_id=record.code_id,
            raw_code=raw_code,
            expires_at=record.expires_at,
            type=code_type,
            security_level=record.security_level,
            status=record.status,
        )

    def _apply_issue_threat(self, record: AccessCode, matches: List[SignatureMatch], options: IssueOptions, now: datetime):
        """Threat handling for a secret that matches attack signatures."""
        level = self.detector.threat_level(matches)
        threat_types = sorted({m.threat_type for m in matches})
        data = {
            "code_id": record.code_id,
            "institution_id": record.institution_id,
            "threat_types": threat_types,
            "threat_level": level.value,
        }

        if level == ThreatSeverity.CRITICAL:
            self.assessor.apply_adjustment(record, 100, "CRITICAL_THREAT", now)
            record.status = CodeStatus.SUSPENDED
            record.suspension_reason = "CRITICAL_THREAT"
            self._safe_alert(
                "CRITICAL_THREAT_DETECTED",
                f"Critical threat in code issued for {record.institution_id}",
                AlertSeverity.CRITICAL,
                data,
            )
        else:
            delta = self.risk_policy.threat_adjustments.get(level.value, 0)
            self.assessor.apply_adjustment(record, delta, f"{level.value}_THREAT", now)
            if level == ThreatSeverity.HIGH:
                record.status = CodeStatus.SUSPENDED
                record.suspension_reason = "HIGH_THREAT"
                self._safe_alert(
                    "THREAT_DETECTED",
                    f"High threat in code issued for {record.institution_id}",
                    AlertSeverity.HIGH,
                    data,
                )

        self._safe_audit(
            "THREAT_DETECTED",
            success=False,
            user_id=options.created_by,
            ip_address=options.ip_address,
            user_agent=options.user_agent,
            data=data,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_code(
        self,
        raw_code: str,
        institution_id: Optional[str] = None,
        context: Optional[ValidationContext] = None
    ) -> ValidationResult:
        """
        Validate a submitted code. Never raises.

        Args:
            raw_code: Code as submitted
            institution_id: Restrict the lookup to one institution
            context: Caller IP, user agent, session, user and API key

        Returns:
            ValidationResult; on failure `error` holds a stable code such as
            CODE_NOT_FOUND, CODE_EXPIRED, LOCKED_OUT or ATTACK_DETECTED
        """
        context = context or ValidationContext()
        started = time.perf_counter()

        try:
            return self._validate(raw_code, institution_id, context, started)
        except CodeGuardError as e:
            self._log_denial(e, institution_id, context, started)
            return ValidationResult.from_error(e)
        except Exception as e:
            capture_business_error(
                e,
                context={"operation": "validate_code", "institution_id": institution_id, "ip": context.ip_address}
            )
            fault = SystemFaultError(message_key="code.validate.failed")
            self._log_denial(fault, institution_id, context, started)
            return ValidationResult.from_error(fault)

    def _validate(
        self,
        raw_code: str,
        institution_id: Optional[str],
        context: ValidationContext,
        started: float
    ) -> ValidationResult:
        request = self._rate_limit_request(context, institution_id)

        # 1. Rate limiter
        decision = self.rate_limiter.check_rate_limit(request)
        if not decision.allowed:
            reason = decision.reason.value
            raise RateLimitError(
                f"Rate limited: {reason}",
                code=reason,
                message_key=f"ratelimit.{reason.lower()}",
                retry_after=decision.retry_after,
                risk_score=decision.risk_score,
            )

        if not raw_code or not isinstance(raw_code, str):
            raise ValidationError("Code is required", message_key="code.validate.required")

        # 2. Signatures, scanned up to max_input_length before the length check
        matches = self.detector.scan(raw_code[:self.code_policy.max_input_length], field="code")
        if matches:
            threat = self.rate_limiter.handle_attack(request, matches)
            threat_types = sorted({m.threat_type for m in matches})
            self._safe_alert(
                "VALIDATION_ATTACK",
                f"{', '.join(threat_types)} submitted as a code from {context.ip_address}",
                AlertSeverity.HIGH,
                {
                    "ip_address": context.ip_address,
                    "institution_id": institution_id,
                    "threat_types": threat_types,
                    "threat_id": threat.threat_id,
                },
            )
            raise ThreatDetectedError(
                "Attack signature in submitted code",
                details={"threat_types": threat_types, "threat_id": threat.threat_id}
            )

        if len(raw_code) > self.code_policy.max_input_length:
            raise ValidationError("Code is too long", message_key="code.validate.too_long")

        # 3. Lookup
        record = self._lookup(raw_code, institution_id)
        if record is None:
            self._safe_audit(
                "INVALID_CODE",
                success=False,
                **self._context_fields(context),
                duration_ms=self._elapsed_ms(started),
                data={"institution_id": institution_id},
            )
            outcome = self.rate_limiter.record_failed_attempt(request)
            if outcome.locked:
                raise RateLimitError(
                    "Locked out after repeated failures",
                    code="LOCKED_OUT",
                    message_key="ratelimit.locked_out",
                    retry_after=outcome.retry_after,
                    risk_score=70,
                )
            raise NotFoundError("Code not found", risk_score=50, details={"audited": True})

        # 4. Usability
        now = self._clock()
        with self.repository.lock(record.code_id):
            self._check_usable(record, now)

        # 5. Risk
        assessment = self._assess(record, context, now)
        if assessment.risk_score >= self.risk_policy.block_threshold:
            self._block_risky(record, context, assessment, now)

        # 6. Use
        with self.repository.lock(record.code_id):
            self._check_usable(record, now)
            record.usage_count += 1
            record.last_accessed = now
            record.access_history.append(AccessRecord(
                timestamp=now,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session_id=context.session_id,
                risk_score=assessment.risk_score,
            ))
            del record.access_history[:-self.code_policy.access_history_limit]
            self.assessor.apply_usage_feedback(record, assessment, now)
            view = record.to_view()

        try:
            self.rate_limiter.record_success(request)
        except Exception as e:
            capture_business_error(e, context={"operation": "record_success", "ip": context.ip_address})

        self._safe_audit(
            "VALID_CODE_USED",
            **self._context_fields(context),
            duration_ms=self._elapsed_ms(started),
            data={
                "code_id": record.code_id,
                "institution_id": record.institution_id,
                "usage_count": view.usage_count,
                "risk_score": assessment.risk_score,
                "risk_factors": assessment.factors,
            },
        )

        return ValidationResult(
            is_valid=True,
            risk_score=assessment.risk_score,
            code_data=view,
            risk_factors=assessment.factors,
        )

    def _rate_limit_request(self, context: ValidationContext, institution_id: Optional[str]) -> RateLimitRequest:
        # The submitted code never goes to the limiter
        return RateLimitRequest(
            ip=context.ip_address,
            user_id=context.user_id,
            session_id=context.session_id,
            api_key=context.api_key,
            path=context.path,
            method="POST",
            user_agent=context.user_agent,
            headers=context.headers,
            body={"institution_id": institution_id} if institution_id else None,
        )

    def _lookup(self, raw_code: str, institution_id: Optional[str]) -> Optional[AccessCode]:
        signature = self.crypto.signer.sign(raw_code)
        for record in self.repository.find_by_signature(signature, institution_id):
            if self.crypto.hasher.verify(raw_code, record.secret_hash):
                return record
        return None

    def _check_usable(self, record: AccessCode, now: datetime):
        """Raise NotFoundError unless the record can be used right now. Caller holds the lock."""
        if self.repository.get(record.code_id) is not record or record.status == CodeStatus.DELETED:
            raise NotFoundError("Code not found", risk_score=50)

        if record.is_expired(now):
            record.status = CodeStatus.EXPIRED
            error = NotFoundError("Code expired", code="CODE_EXPIRED", message_key="code.expired", risk_score=30)
        elif not record.is_active:
            error = NotFoundError("Code inactive", code="CODE_INACTIVE", message_key="code.inactive", risk_score=30)
        elif record.max_usage is not None and record.usage_count >= record.max_usage:
            error = NotFoundError(
                "Usage limit exceeded",
                code="USAGE_LIMIT_EXCEEDED",
                message_key="code.usage_limit_exceeded",
                risk_score=30
            )
        else:
            return

        record.failure_times.append(now)
        del record.failure_times[:-FAILURE_HISTORY_LIMIT]
        error.details["code_id"] = record.code_id
        raise error

    def _assess(self, record: AccessCode, context: ValidationContext, now: datetime) -> RiskAssessment:
        try:
            return self.assessor.assess(record, context, now)
        except Exception as e:
            capture_business_error(e, context={"operation": "assess_risk", "code_id": record.code_id})
            return RiskAssessment(risk_score=50, factors=["ASSESSMENT_UNAVAILABLE"])

    def _block_risky(self, record: AccessCode, context: ValidationContext, assessment: RiskAssessment, now: datetime):
        with self.repository.lock(record.code_id):
            if record.status == CodeStatus.ACTIVE:
                record.status = CodeStatus.SUSPENDED
                record.suspension_reason = "HIGH_RISK"
            record.risk_profile.add_factor("HIGH_RISK_BLOCKED")
            record.risk_profile.last_updated = now

        data = {
            "code_id": record.code_id,
            "institution_id": record.institution_id,
            "risk_score": assessment.risk_score,
            "risk_factors": assessment.factors,
            "ip_address": context.ip_address,
        }
        self._safe_alert(
            "HIGH_RISK_CODE_DETECTED",
            f"High risk validation of {record.code_id}",
            AlertSeverity.HIGH,
            data,
        )

        if assessment.risk_score >= self.risk_policy.ip_block_threshold and context.ip_address != "unknown":
            self.rate_limiter.block_ip(
                context.ip_address,
                reason="HIGH_RISK_VALIDATION",
                duration_seconds=self.risk_policy.ip_block_seconds,
            )

        raise RiskBlockedError(
            "Validation blocked by risk assessment",
            risk_score=assessment.risk_score,
            details={"code_id": record.code_id, "risk_factors": assessment.factors}
        )

    def _log_denial(self, error: CodeGuardError, institution_id: Optional[str], context: ValidationContext, started: float):
        if error.details.get("audited"):
            return

        activity = DENIAL_ACTIVITIES.get(error.code, "VALIDATION_FAILED")
        data = {
            "error": error.code,
            "institution_id": institution_id,
            "risk_score": error.risk_score,
        }
        data.update(error.details)
        if isinstance(error, RateLimitError):
            data["retry_after"] = error.retry_after

        self._safe_audit(
            activity,
            success=False,
            **self._context_fields(context),
            duration_ms=self._elapsed_ms(started),
            data=data,
        )

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def _get_mutable(self, code_id: str, now: datetime) -> AccessCode:
        """Record for a mutation. Caller holds the lock."""
        record = self.repository.get(code_id)
        if record is None:
            raise NotFoundError(f"Code {code_id} not found", details={"code_id": code_id})
        if record.status.is_terminal or record.is_expired(now):
            raise NotFoundError(
                f"Code {code_id} is expired",
                code="CODE_EXPIRED",
                message_key="code.expired",
                details={"code_id": code_id}
            )
        return record

    def update_status(self, code_id: str, patch: Union[StatusPatch, Dict[str, Any]]) -> CodeView:
        """
        Apply a status patch.

        is_active=False suspends an active code; is_active=True reactivates a
        suspended one. max_usage must be positive and not below the current
        usage count. metadata is merged.

        Raises:
            NotFoundError: Unknown, expired or deleted code
            ValidationError: Invalid max_usage
        """
        if isinstance(patch, dict):
            patch = StatusPatch(**patch)
        now = self._clock()

        with self.repository.lock(code_id):
            record = self._get_mutable(code_id, now)

            if patch.max_usage is not None and (patch.max_usage <= 0 or patch.max_usage < record.usage_count):
                raise ValidationError(
                    "max_usage must be positive and not below the current usage",
                    message_key="code.update.invalid_max_usage"
                )

            changes: Dict[str, Any] = {}
            if patch.max_usage is not None:
                record.max_usage = patch.max_usage
                changes["max_usage"] = patch.max_usage
            if patch.metadata:
                record.metadata.update(patch.metadata)
                changes["metadata_keys"] = sorted(patch.metadata)

            transition = None
            if patch.is_active is False and record.status == CodeStatus.ACTIVE:
                record.status = CodeStatus.SUSPENDED
                record.suspension_reason = patch.reason or "MANUAL"
                transition = "CODE_SUSPENDED"
            elif patch.is_active is True and record.status == CodeStatus.SUSPENDED:
                record.status = CodeStatus.ACTIVE
                record.suspension_reason = None
                transition = "CODE_REACTIVATED"

            view = record.to_view()

        data = {"code_id": code_id, "code_status": view.status.value, "reason": patch.reason, **changes}
        self._safe_audit("CODE_UPDATED", data=data)
        if transition:
            self._safe_audit(transition, data=data)

        return view

    def deactivate(self, code_id: str, reason: Optional[str] = None) -> CodeView:
        return self.update_status(code_id, StatusPatch(is_active=False, reason=reason))

    def reactivate(self, code_id: str, reason: Optional[str] = None) -> CodeView:
        return self.update_status(code_id, StatusPatch(is_active=True, reason=reason))

    def extend_expiry(self, code_id: str, hours: float) -> CodeView:
        """
        Push expires_at later by `hours`.

        Raises:
            ValidationError: hours is not a positive finite number
            NotFoundError: Unknown, expired or deleted code
        """
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not math.isfinite(hours) or hours <= 0:
            raise ValidationError("hours must be a positive number", message_key="code.extend.invalid_hours")

        now = self._clock()
        with self.repository.lock(code_id):
            record = self._get_mutable(code_id, now)
            previous = record.expires_at
            record.expires_at = previous + timedelta(hours=hours)
            view = record.to_view()

        self._safe_audit(
            "CODE_EXTENDED",
            data={
                "code_id": code_id,
                "hours": hours,
                "previous_expires_at": previous.isoformat(),
                "expires_at": view.expires_at.isoformat(),
            },
        )
        return view

    def delete(self, code_id: str) -> bool:
        """
        Delete a code. Its secret stops validating immediately.

        Raises:
            NotFoundError: Unknown code
        """
        with self.repository.lock(code_id):
            record = self.repository.get(code_id)
            if record is None:
                raise NotFoundError(f"Code {code_id} not found", details={"code_id": code_id})
            record.status = CodeStatus.DELETED
            self.repository.remove(code_id)

        self._safe_audit(
            "CODE_DELETED",
            data={"code_id": code_id, "institution_id": record.institution_id, "type": record.type},
        )
        return True

    def search_codes(self, filters: Optional[CodeSearchFilters] = None, **criteria) -> List[CodeView]:
        """
        Sanitized views of matching codes, newest first.

        Usage:
            service.search_codes(institution_id="ORG1", is_active=True)
        """
        filters = filters or CodeSearchFilters(**criteria)
        now = self._clock()
        views = []

        for record in self.repository.snapshot():
            with self.repository.lock(record.code_id):
                if filters.institution_id is not None and record.institution_id != filters.institution_id:
                    continue
                if filters.type is not None and record.type != filters.type:
                    continue
                if filters.status is not None and record.status != filters.status:
                    continue
                if filters.is_active is not None and record.is_active != filters.is_active:
                    continue
                if filters.is_expired is not None and record.is_expired(now) != filters.is_expired:
                    continue
                if filters.security_level is not None and record.security_level != filters.security_level:
                    continue
                views.append(record.to_view())

        views.sort(key=lambda view: view.created_at, reverse=True)
        return views

    # ------------------------------------------------------------------
    # Statistics and export
    # ------------------------------------------------------------------

    def get_stats(self, code_id: Optional[str] = None) -> Union[CodeStats, SystemStats]:
        """
        Per-code statistics, or system-wide statistics when code_id is None.

        Raises:
            NotFoundError: Unknown code_id
        """
        now = self._clock()
        if code_id is None:
            return self._system_stats(now)

        record = self.repository.get(code_id)
        if record is None:
            raise NotFoundError(f"Code {code_id} not found", details={"code_id": code_id})

        with self.repository.lock(code_id):
            usage_percentage = (
                round(record.usage_count / record.max_usage * 100, 2)
                if record.max_usage else 0.0
            )
            return CodeStats(
                code_id=record.code_id,
                institution_id=record.institution_id,
                type=record.type,
                status=record.status,
                is_active=record.is_active,
                created_at=record.created_at,
                expires_at=record.expires_at,
                time_until_expiry=max(0.0, (record.expires_at - now).total_seconds()),
                is_expired=record.is_expired(now),
                usage_count=record.usage_count,
                max_usage=record.max_usage,
                usage_percentage=usage_percentage,
                risk_score=record.risk_profile.risk_score,
                overall_risk=record.risk_profile.overall_risk,
                last_accessed=record.last_accessed,
            )

    def _system_stats(self, now: datetime) -> SystemStats:
        records = self.repository.snapshot()
        total = len(records)

        active = sum(1 for r in records if r.is_active and not r.is_expired(now))
        suspended = sum(1 for r in records if r.status == CodeStatus.SUSPENDED)
        expired = sum(1 for r in records if r.is_expired(now))
        high_risk = sum(1 for r in records if r.risk_profile.overall_risk == RiskLevel.HIGH)
        total_usage = sum(r.usage_count for r in records)

        institutions = Counter(r.institution_id for r in records)
        risk_distribution = {level.value: 0 for level in RiskLevel}
        for r in records:
            risk_distribution[r.risk_profile.overall_risk.value] += 1

        blocked_ips = self.rate_limiter.get_statistics()["blocked"]["ip"]
        open_alerts = self.audit.alerts.count_open()
        critical_alerts = self.audit.alerts.count_open(AlertSeverity.CRITICAL)
        high_alerts = self.audit.alerts.count_open(AlertSeverity.HIGH)

        if critical_alerts or (total and high_risk / total > 0.2):
            status = "CRITICAL"
        elif high_risk or high_alerts:
            status = "WARNING"
        else:
            status = "HEALTHY"

        recommendations = []
        if high_risk:
            recommendations.append(f"Review {high_risk} high-risk codes")
        if suspended:
            recommendations.append(f"Reactivate or delete {suspended} suspended codes")
        if expired:
            recommendations.append(f"{expired} expired codes are waiting for the next sweep")
        if open_alerts:
            recommendations.append(f"Acknowledge {open_alerts} open security alerts")
        if blocked_ips:
            recommendations.append(f"Review {blocked_ips} blocked IP addresses")

        return SystemStats(
            generated_at=now,
            total_codes=total,
            active_codes=active,
            suspended_codes=suspended,
            expired_codes=expired,
            high_risk_codes=high_risk,
            total_usage=total_usage,
            average_usage=round(total_usage / total, 2) if total else 0.0,
            by_type=dict(Counter(r.type for r in records)),
            top_institutions=[
                {"institution_id": institution, "count": count}
                for institution, count in institutions.most_common(10)
            ],
            risk_distribution=risk_distribution,
            blocked_ips=blocked_ips,
            open_alerts=open_alerts,
            status=status,
            recommendations=recommendations,
        )

    def export_codes(self, export_format: str = "json", filters: Optional[CodeSearchFilters] = None) -> str:
        """
        Sanitized export (no hashes, salts or signatures).

        Args:
            export_format: "json" or "csv"

        Raises:
            ValidationError: Unknown format
        """
        export_format = (export_format or "").lower()
        if export_format not in ("json", "csv"):
            raise ValidationError(
                f"Unsupported export format: {export_format}",
                message_key="code.export.invalid_format"
            )

        rows = [view.model_dump(mode="json", include=set(EXPORT_FIELDS)) for view in self.search_codes(filters)]

        if export_format == "json":
            output = json.dumps(rows, indent=2)
        else:
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS)
            writer.writeheader()
            writer.writerows(rows)
            output = buffer.getvalue()

        self._safe_audit("DATA_EXPORT", data={"format": export_format, "count": len(rows)})
        return output

    def run_adaptive_sweep(self) -> SweepReport:
        return self.sweep.run()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _context_fields(context: ValidationContext) -> Dict[str, Any]:
        return {
            "user_id": context.user_id,
            "session_id": context.session_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
        }

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def _safe_audit(self, activity: str, **fields) -> Optional[str]:
        try:
            return self.audit.log_activity(activity, **fields)
        except Exception as e:
            logger.error(f"Audit logging failed for {activity}: {e}", exc_info=True)
            return None

    def _safe_alert(self, alert_type: str, message: str, severity: AlertSeverity, data: Dict[str, Any]) -> Optional[str]:
        try:
            return self.audit.create_alert(alert_type, message, severity, data)
        except Exception as e:
            logger.error(f"Failed to create {alert_type} alert: {e}", exc_info=True)
            return None
