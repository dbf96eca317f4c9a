"""
relaybot - multi-provider chat gateway routing messages to LLM agents
"""

__version__ = "0.1.0"
__logo__ = "📡"
