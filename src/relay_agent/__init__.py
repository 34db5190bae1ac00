"""relay-agent: LLM streaming orchestration with remote tool executors."""

__version__ = "0.1.0"
