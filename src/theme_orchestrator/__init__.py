"""theme-orchestrator: agent orchestration core for Shopify theme edits."""

__version__ = "0.1.0"
