"""
Sync engine: conversation discovery, run state and the orchestrator.
"""
