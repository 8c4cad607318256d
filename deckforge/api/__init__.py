"""HTTP API for the flashcard orchestrator."""
