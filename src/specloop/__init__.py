"""specloop: spec-driven orchestration of parallel coding agents."""

__version__ = "0.1.0"
