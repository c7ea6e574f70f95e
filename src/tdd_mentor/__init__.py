"""TDD Mentor: an AI-assisted PICK/RED/GREEN/REFACTORING workflow."""

__version__ = "0.1.0"
