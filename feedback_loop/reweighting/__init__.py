"""Weight vectors, the exogenous weight cap and the reweighting engine."""
