from .engine import (
    RetryPolicy as RetryPolicy,
    Step as Step,
    WorkflowContext as WorkflowContext,
    WorkflowDefinition as WorkflowDefinition,
    WorkflowEngine as WorkflowEngine,
    WorkflowOutcome as WorkflowOutcome,
)
from .steps import StepExecutor as StepExecutor
