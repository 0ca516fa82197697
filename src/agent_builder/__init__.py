"""
Agent-Builder - declarative tool-using agents with an auditable execution trace.
"""

__version__ = "0.1.0"
