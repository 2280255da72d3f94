"""Execution orchestration engine for host-injected worker contexts."""
