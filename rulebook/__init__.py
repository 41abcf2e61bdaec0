"""Rulebook: curation and scoring engine for an agent's playbook of rules."""

__version__ = "0.1.0"
