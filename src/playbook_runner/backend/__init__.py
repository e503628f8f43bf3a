"""Agent CLI backend implementations."""

from playbook_runner.backend.cli_agent import AgentRunError, CliAgentSpawner
from playbook_runner.backend.output_parser import ParsedAgentOutput, parse_agent_output

__all__ = [
    "AgentRunError",
    "CliAgentSpawner",
    "ParsedAgentOutput",
    "parse_agent_output",
]
