from skema_daemon.agents.models import Outcome, ProgressEvent
from skema_daemon.agents.invoker import AgentInvoker, AgentRun

__all__ = ["AgentInvoker", "AgentRun", "Outcome", "ProgressEvent"]
