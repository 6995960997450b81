"""SPD geometry and the outcome monitor."""
