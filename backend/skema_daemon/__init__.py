"""
Skema daemon.

Receives design annotations captured by the browser overlay and either drives a
command-line coding agent to apply them (auto mode) or queues them for an
external agent that pulls work over the control protocol (queue mode):

1. An annotation store tracking each annotation's lifecycle
2. A snapshot manager recording reversible changes to the working tree
3. An agent invoker streaming the agent's progress back to the browser
"""

__version__ = "1.0.0"
