"""FlipFleet: a fleet of flip-trading agents that share capacity limits."""
