"""
ToolStream - agent loop orchestrator with incremental streaming tool execution
"""

__version__ = "1.0.0"
