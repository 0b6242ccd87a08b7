"""Document-to-questions generation pipeline."""
