"""Contract onboarding: storage layout resolution, event registry, backfill hand-off."""

__version__ = "0.1.0"
