"""
Ad pipeline package: creative asset in, reviewed and paused ad out.

Modules:
- models: job record, state machine, verdicts and batch results
- retry: classified retry/backoff around external calls
- review: dual-reviewer consensus and the single revision pass
- engine: drives one job through its stages
- orchestrator: concurrency-capped, failure-isolated batch runs
- context: collaborators and shared process resources
- assets, analyzer, messaging, publishing, render: local collaborators
"""
