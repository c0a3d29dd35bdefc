"""
Customer lifecycle package.

Modules of interest:
- orchestrator: Provision, update, deprovision and entitlement operations.
- results: Step outcomes, failure kinds and the DownstreamFailure error.
"""
