"""Runtime configuration for the KYC processing backbone.

All options are environment-sourced (optionally through a ``.env`` file) and
exposed through a single ``AppConfig``. Components never read the environment
themselves: the runtime converts the config into the small frozen settings
objects below and hands them over by constructor.

Env names follow the original deployment (``OCR_GPU_*`` for the worker,
``BULI2_*`` for the external review service).
"""
from __future__ import annotations

import tempfile
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LATEST_REVIEW_SCHEMA_VERSION = 3


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _to_bool(raw: str | bool | None, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None or str(raw).strip() == "":
        return default
    return parse_bool(str(raw))


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    concurrency: int = 2
    poll_interval_seconds: float = 1.0
    max_retries: int = 3
    lock_ttl_seconds: float = 900.0
    gpu_auto_fallback: bool = True


@dataclass(frozen=True, slots=True)
class ReaperSettings:
    interval_seconds: float = 60.0
    stuck_timeout_seconds: float = 600.0
    max_retries: int = 3


@dataclass(frozen=True, slots=True)
class BreakerSettings:
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class ReviewWorkflowSettings:
    poll_interval_seconds: float = 3600.0
    max_wait_seconds: float = 7 * 24 * 3600.0
    schema_version: int = LATEST_REVIEW_SCHEMA_VERSION


class AppConfig(BaseSettings):
    redis_url: str = Field("redis://localhost:6379/0", validation_alias="REDIS_URL")
    queue_prefix: str = Field(
        "filot:ocr:gpu",
        validation_alias=AliasChoices("OCR_GPU_QUEUE_PREFIX", "OCR_QUEUE_PREFIX"),
    )
    results_channel: str = Field("filot:ocr:gpu:results", validation_alias="OCR_GPU_PUBLISH_CHANNEL")

    # Worker / GPU path
    gpu_enabled_raw: str | bool | None = Field(False, validation_alias="OCR_GPU_ENABLED")
    gpu_auto_fallback_raw: str | bool | None = Field(True, validation_alias="OCR_GPU_AUTOFALLBACK")
    # Engine-level fallback flag; independent of the GPU-specific one above.
    ocr_auto_fallback_raw: str | bool | None = Field(True, validation_alias="OCR_AUTOFALLBACK")
    nvidia_visible_devices: str | None = Field(None, validation_alias="NVIDIA_VISIBLE_DEVICES")
    gpu_concurrency: int = Field(2, validation_alias="OCR_GPU_CONCURRENCY")
    poll_interval_seconds: float = Field(1.0, validation_alias="OCR_GPU_POLL_INTERVAL_SECONDS")
    max_retries: int = Field(3, validation_alias=AliasChoices("OCR_GPU_MAX_RETRIES", "OCR_MAX_RETRIES"))
    lock_ttl_seconds: float = Field(900.0, validation_alias="OCR_LOCK_TTL_SECONDS")
    delayed_promotion_interval_seconds: float = Field(1.0, validation_alias="OCR_DELAYED_INTERVAL_SECONDS")
    recover_on_startup_raw: str | bool | None = Field(True, validation_alias="OCR_RECOVER_ON_STARTUP")
    embedded_worker_raw: str | bool | None = Field(True, validation_alias="OCR_WORKER_EMBEDDED")
    enable_metrics_raw: str | bool | None = Field(True, validation_alias="ENABLE_METRICS")

    # Reaper
    stuck_timeout_seconds: float = Field(600.0, validation_alias="OCR_STUCK_TIMEOUT_SECONDS")
    reaper_interval_seconds: float = Field(60.0, validation_alias="OCR_REAPER_INTERVAL_SECONDS")

    # External review service + circuit breaker
    review_service_url: str | None = Field(None, validation_alias="BULI2_API_URL")
    review_service_api_key: str | None = Field(None, validation_alias="BULI2_API_KEY")
    review_callback_secret: str | None = Field(None, validation_alias="BULI2_CALLBACK_SECRET")
    review_request_timeout_seconds: float = Field(30.0, validation_alias="BULI2_REQUEST_TIMEOUT_SECONDS")
    review_retry_queue_key: str = Field("filot:buli2:retry_queue", validation_alias="BULI2_RETRY_QUEUE_KEY")
    breaker_failure_threshold: int = Field(5, validation_alias="BULI2_CB_FAILURE_THRESHOLD")
    breaker_cooldown_seconds: float = Field(30.0, validation_alias="BULI2_CB_COOLDOWN_SECONDS")
    escalation_drain_interval_seconds: float = Field(30.0, validation_alias="BULI2_DRAIN_INTERVAL_SECONDS")
    escalation_drain_batch: int = Field(10, validation_alias="BULI2_DRAIN_BATCH")
    escalation_max_attempts: int = Field(5, validation_alias="BULI2_MAX_QUEUED_ATTEMPTS")

    # Review workflow
    review_poll_interval_seconds: float = Field(3600.0, validation_alias="REVIEW_POLL_INTERVAL_SECONDS")
    review_max_wait_seconds: float = Field(7 * 24 * 3600.0, validation_alias="REVIEW_MAX_WAIT_SECONDS")
    review_schema_version: int = Field(LATEST_REVIEW_SCHEMA_VERSION, validation_alias="REVIEW_SCHEMA_VERSION")

    # Scoring thresholds
    auto_approve_threshold: int = Field(85, validation_alias="AI_SCORE_THRESHOLD_AUTO_APPROVE")
    auto_reject_threshold: int = Field(35, validation_alias="AI_SCORE_THRESHOLD_AUTO_REJECT")

    # Local collaborators
    tmp_dir: str = Field(default_factory=tempfile.gettempdir, validation_alias="OCR_TMP_DIR")
    storage_root: str = Field("./uploads", validation_alias=AliasChoices("OBJECT_STORAGE_ROOT", "UPLOAD_DIR"))
    tesseract_cmd: str = Field("tesseract", validation_alias="TESSERACT_CMD")
    tesseract_lang: str = Field("ind+eng", validation_alias="TESSERACT_LANG")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        if self.review_service_url:
            self.review_service_url = self.review_service_url.rstrip("/")

    @property
    def gpu_enabled(self) -> bool:
        return _to_bool(self.gpu_enabled_raw, False)

    @property
    def gpu_auto_fallback(self) -> bool:
        # Only an explicit "false" disables the fallback.
        raw = self.gpu_auto_fallback_raw
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() != "false" if raw is not None else True

    @property
    def ocr_auto_fallback(self) -> bool:
        raw = self.ocr_auto_fallback_raw
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() != "false" if raw is not None else True

    @property
    def recover_on_startup(self) -> bool:
        return _to_bool(self.recover_on_startup_raw, True)

    @property
    def embedded_worker(self) -> bool:
        """Run the background loops inside the API process."""
        return _to_bool(self.embedded_worker_raw, True)

    @property
    def enable_metrics(self) -> bool:
        return _to_bool(self.enable_metrics_raw, True)

    @property
    def gpu_available(self) -> bool:
        """GPU path is usable only when enabled and devices are not hidden."""
        if (self.nvidia_visible_devices or "").strip().lower() == "none":
            return False
        return self.gpu_enabled

    @property
    def review_service_configured(self) -> bool:
        return bool(self.review_service_url)

    def worker_settings(self) -> WorkerSettings:
        return WorkerSettings(
            concurrency=self.gpu_concurrency,
            poll_interval_seconds=self.poll_interval_seconds,
            max_retries=self.max_retries,
            lock_ttl_seconds=self.lock_ttl_seconds,
            gpu_auto_fallback=self.gpu_auto_fallback,
        )

    def reaper_settings(self) -> ReaperSettings:
        return ReaperSettings(
            interval_seconds=self.reaper_interval_seconds,
            stuck_timeout_seconds=self.stuck_timeout_seconds,
            max_retries=self.max_retries,
        )

    def breaker_settings(self) -> BreakerSettings:
        return BreakerSettings(
            failure_threshold=self.breaker_failure_threshold,
            cooldown_seconds=self.breaker_cooldown_seconds,
        )

    def review_workflow_settings(self) -> ReviewWorkflowSettings:
        return ReviewWorkflowSettings(
            poll_interval_seconds=self.review_poll_interval_seconds,
            max_wait_seconds=self.review_max_wait_seconds,
            schema_version=self.review_schema_version,
        )

    def validate_required(self) -> None:
        positive = [
            ("gpu_concurrency", self.gpu_concurrency, "OCR_GPU_CONCURRENCY"),
            ("poll_interval_seconds", self.poll_interval_seconds, "OCR_GPU_POLL_INTERVAL_SECONDS"),
            ("max_retries", self.max_retries, "OCR_GPU_MAX_RETRIES"),
            ("lock_ttl_seconds", self.lock_ttl_seconds, "OCR_LOCK_TTL_SECONDS"),
            ("stuck_timeout_seconds", self.stuck_timeout_seconds, "OCR_STUCK_TIMEOUT_SECONDS"),
            ("reaper_interval_seconds", self.reaper_interval_seconds, "OCR_REAPER_INTERVAL_SECONDS"),
            ("breaker_failure_threshold", self.breaker_failure_threshold, "BULI2_CB_FAILURE_THRESHOLD"),
            ("breaker_cooldown_seconds", self.breaker_cooldown_seconds, "BULI2_CB_COOLDOWN_SECONDS"),
            ("review_poll_interval_seconds", self.review_poll_interval_seconds, "REVIEW_POLL_INTERVAL_SECONDS"),
            ("review_max_wait_seconds", self.review_max_wait_seconds, "REVIEW_MAX_WAIT_SECONDS"),
        ]
        invalid = [env_name for _name, value, env_name in positive if value <= 0]
        if invalid:
            raise RuntimeError("Configuration values must be positive: " + ", ".join(sorted(invalid)))
        if not 1 <= self.review_schema_version <= LATEST_REVIEW_SCHEMA_VERSION:
            raise RuntimeError(
                f"REVIEW_SCHEMA_VERSION must be between 1 and {LATEST_REVIEW_SCHEMA_VERSION}"
            )
        if self.auto_approve_threshold < self.auto_reject_threshold:
            raise RuntimeError(
                "AI_SCORE_THRESHOLD_AUTO_APPROVE must not be below AI_SCORE_THRESHOLD_AUTO_REJECT"
            )
        if self.review_service_url and not self.review_service_url.startswith(("http://", "https://")):
            raise RuntimeError("BULI2_API_URL must be an http(s) URL")
        if self.review_service_url and not self.review_callback_secret:
            raise RuntimeError("BULI2_CALLBACK_SECRET is required when BULI2_API_URL is configured")


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = [
    "AppConfig",
    "BreakerSettings",
    "LATEST_REVIEW_SCHEMA_VERSION",
    "ReaperSettings",
    "ReviewWorkflowSettings",
    "WorkerSettings",
    "get_config",
    "parse_bool",
]
