"""QA Playbook: orchestrated multi-stage verification with a single quality gate."""

__version__ = "0.3.0"
