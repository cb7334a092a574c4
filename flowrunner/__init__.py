"""Workflow execution core for a no-code DeFi automation backend."""
