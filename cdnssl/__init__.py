"""
CDN certificate auto-renewal.

This package contains:
- pipeline: renewal stages and the stage state machine
- resume: resume-at-failing-stage scheduling
- selector: working set selection
- orchestrator: the renewal cycle and control loop
- capabilities: capability ports and the live capability set
- certbot: certbot-backed certificate issuer
- qiniu: Qiniu CDN inventory and publisher
- notification: alert e-mail delivery
- report: failure report rendering
- config_loader: configuration loading and change detection
- context: cancellable, deadline-bounded call context
- logger: centralized logging setup
- helpers: common utility functions
"""

from .logger import setup_logger, get_logger
from .config_loader import (
    load_config,
    Config,
    ConfigSource,
    ConfigSnapshot,
    ConfigurationError,
    Settings,
    IssuerConfig,
    CdnConfig,
    NotificationsConfig,
    EmailNotificationConfig,
)
from .context import CallContext, CancellationToken, CallCancelledError
from .capabilities import (
    CapabilityError,
    CapabilityUnavailableError,
    CapabilityFactories,
    CapabilityRegistry,
    CapabilitySet,
    CertificateRecord,
    DomainInventory,
    CertificateIssuer,
    CertificatePublisher,
    Notifier,
)
from .pipeline import Stage, WorkItem, FailureRecord, PipelineOutcome, run_pipeline
from .resume import resume_entry_point, bucket_failures, resume_failures
from .selector import DomainSelection, select_work_items, build_working_set
from .report import render_failure_report, REPORT_SUBJECT
from .orchestrator import CycleOrchestrator, CycleReport
from .certbot import CertbotIssuer, CertbotError
from .qiniu import QiniuClient, CdnError
from .notification import SmtpNotifier, SendGridNotifier, NotificationError, build_notifier

__all__ = [
    # Logger
    "setup_logger",
    "get_logger",
    # Config
    "load_config",
    "Config",
    "ConfigSource",
    "ConfigSnapshot",
    "ConfigurationError",
    "Settings",
    "IssuerConfig",
    "CdnConfig",
    "NotificationsConfig",
    "EmailNotificationConfig",
    # Context
    "CallContext",
    "CancellationToken",
    "CallCancelledError",
    # Capabilities
    "CapabilityError",
    "CapabilityUnavailableError",
    "CapabilityFactories",
    "CapabilityRegistry",
    "CapabilitySet",
    "CertificateRecord",
    "DomainInventory",
    "CertificateIssuer",
    "CertificatePublisher",
    "Notifier",
    # Core
    "Stage",
    "WorkItem",
    "FailureRecord",
    "PipelineOutcome",
    "run_pipeline",
    "resume_entry_point",
    "bucket_failures",
    "resume_failures",
    "DomainSelection",
    "select_work_items",
    "build_working_set",
    "render_failure_report",
    "REPORT_SUBJECT",
    "CycleOrchestrator",
    "CycleReport",
    # Adapters
    "CertbotIssuer",
    "CertbotError",
    "QiniuClient",
    "CdnError",
    "SmtpNotifier",
    "SendGridNotifier",
    "NotificationError",
    "build_notifier",
]
