"""Tool-call boundary: paid tool gating and the simulated tool bodies."""
