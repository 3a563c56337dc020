"""Assessment tiers: deterministic rules, quick scoring and the tiered engine."""
