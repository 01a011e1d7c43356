"""HTTP surface for agents, operators and the lead channel."""
