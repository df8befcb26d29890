"""HTTP layer for the Living Lexicon scan service."""
