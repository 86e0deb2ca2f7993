from .jobs import BackportJob as BackportJob, JobLog as JobLog
from .workflow import WorkflowRun as WorkflowRun, WorkflowStep as WorkflowStep
