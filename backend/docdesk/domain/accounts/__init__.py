"""Account records backing chat principals."""
