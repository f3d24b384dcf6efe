"""
Guardian -- Behavioral security layer for an autonomous agent fleet.

Watches agent heartbeats and message traffic, wallet balances, RPC endpoint
health and user/LLM content, and turns what it sees into correlated,
rate-limited incidents and containment decisions.
"""

__version__ = "0.1.0"
