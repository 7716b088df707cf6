"""Run history.

This module handles:
- ORM models for pipeline runs and their stages
- Recording runs as the orchestrator executes them
- Querying past runs
"""
