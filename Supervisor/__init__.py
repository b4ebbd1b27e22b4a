"""
Supervisor package initialization.
Exports the check, retry and health entry points.
"""

from Supervisor.ErrorClassifier import ErrorCategory, ErrorRecord, classify, summarize, condense_error
from Supervisor.RetryStrategy import RetryDecision, calculate_backoff_delay, decide
from Supervisor.RunLedger import RunLedger
from Supervisor.SupervisorCheck import CheckResult, check_agent_run, decide_action, observe_timeout
from Supervisor.RetryOrchestrator import RetryOrchestrator
from Supervisor.Supervisor import Supervisor, run_supervisor_checks
from Supervisor.Notifications import Notifier, LoggingNotifier, WebhookNotifier, build_notifier
from Supervisor.HealthCheck import (
    HealthChecker,
    run_health_check,
    run_health_check_with_alerts,
    run_quick_health_check,
)
from Supervisor.QualitySnapshot import capture_quality_snapshot, compare_snapshots, get_latest_snapshot
from Supervisor.WeeklyReport import generate_weekly_report

__all__ = [
    'ErrorCategory',
    'ErrorRecord',
    'classify',
    'summarize',
    'condense_error',
    'RetryDecision',
    'calculate_backoff_delay',
    'decide',
    'RunLedger',
    'CheckResult',
    'check_agent_run',
    'decide_action',
    'observe_timeout',
    'RetryOrchestrator',
    'Supervisor',
    'run_supervisor_checks',
    'Notifier',
    'LoggingNotifier',
    'WebhookNotifier',
    'build_notifier',
    'HealthChecker',
    'run_health_check',
    'run_health_check_with_alerts',
    'run_quick_health_check',
    'capture_quality_snapshot',
    'compare_snapshots',
    'get_latest_snapshot',
    'generate_weekly_report'
]
