"""HTTP layer for the Foresight services."""
