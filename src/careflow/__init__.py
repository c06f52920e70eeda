"""careflow: workflow automation for clinic CRMs."""

from careflow.__version__ import __version__

from careflow.core.automation import AutomationEngine
from careflow.core.config import (
    EngineConfig,
    MailchimpSettings,
    ResendSettings,
    SendGridSettings,
    TwilioSettings,
)
from careflow.core.constants import (
    Channel,
    ConditionOperator,
    DeliveryStatus,
    EnrollmentStatus,
    LogOutcome,
    RecordKind,
    StepType,
    TriggerType,
)
from careflow.core.exceptions import (
    AppointmentNotFoundError,
    CareflowError,
    ChannelMismatchError,
    ClientNotFoundError,
    ConfigurationError,
    DeliveryFailedError,
    DuplicateEnrollmentError,
    EnrollmentConflictError,
    ExecutionNotFoundError,
    ProviderError,
    RecordNotFoundError,
    StepConfigError,
    StepExecutionError,
    StepSkipped,
    TemplateNotFoundError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from careflow.core.types import (
    Appointment,
    Client,
    CommunicationPreferences,
    Condition,
    DeliveryRecord,
    DuplicatePrevention,
    Enrollment,
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionStatus,
    MatchConditions,
    MessageTemplate,
    Step,
    TriggerEvent,
    TriggerReport,
    WorkflowDefinition,
)
from careflow.messaging import (
    MailchimpTransactionalProvider,
    MessageDeliveryService,
    MessageProvider,
    ProviderChain,
    ResendEmailProvider,
    SendGridEmailProvider,
    TwilioSMSProvider,
    build_provider_chains,
)
from careflow.store import (
    InMemoryRecordStore,
    InMemoryWorkflowRepository,
    RecordStore,
    SQLiteWorkflowRepository,
    WorkflowRepository,
)
from careflow.templates import TemplateRenderer, build_merge_variables
from careflow.utils.logging import configure_logging

__all__ = [
    "__version__",
    "AutomationEngine",
    "EngineConfig",
    "TwilioSettings",
    "SendGridSettings",
    "ResendSettings",
    "MailchimpSettings",
    "configure_logging",
    # Enums
    "Channel",
    "ConditionOperator",
    "DeliveryStatus",
    "EnrollmentStatus",
    "LogOutcome",
    "RecordKind",
    "StepType",
    "TriggerType",
    # Exceptions
    "CareflowError",
    "ConfigurationError",
    "WorkflowNotFoundError",
    "WorkflowInactiveError",
    "ExecutionNotFoundError",
    "RecordNotFoundError",
    "ClientNotFoundError",
    "AppointmentNotFoundError",
    "TemplateNotFoundError",
    "EnrollmentConflictError",
    "DuplicateEnrollmentError",
    "StepExecutionError",
    "StepConfigError",
    "DeliveryFailedError",
    "ChannelMismatchError",
    "StepSkipped",
    "ProviderError",
    # Models
    "Appointment",
    "Client",
    "CommunicationPreferences",
    "Condition",
    "DeliveryRecord",
    "DuplicatePrevention",
    "Enrollment",
    "ExecutionContext",
    "ExecutionLogEntry",
    "ExecutionStatus",
    "MatchConditions",
    "MessageTemplate",
    "Step",
    "TriggerEvent",
    "TriggerReport",
    "WorkflowDefinition",
    # Messaging
    "MessageProvider",
    "TwilioSMSProvider",
    "SendGridEmailProvider",
    "ResendEmailProvider",
    "MailchimpTransactionalProvider",
    "ProviderChain",
    "build_provider_chains",
    "MessageDeliveryService",
    # Storage
    "RecordStore",
    "WorkflowRepository",
    "InMemoryRecordStore",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    # Templates
    "TemplateRenderer",
    "build_merge_variables",
]
