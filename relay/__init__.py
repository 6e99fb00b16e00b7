"""
Relay — Subagent Orchestration & Model Routing

This package lets a primary coding-agent process hand work to child subagent
processes. Each child is a narrower agent instance with its own system prompt,
tool policy and model, and the parent can run them one at a time, as a bounded
parallel batch, or as a sequential "centipede" chain.

Architecture layers (bottom to top):
    1. Capability matrix (static per-model-family ratings)
    2. Model registry + fuzzy resolver
    3. Task classifier (cheapest-model probe with deterministic fallback)
    4. Model router (config layering, ranking, credential walk)
    5. Agent registry (discovery, defaults, fuzzy/ephemeral resolution)
    6. Orchestrator + runners (single, parallel, centipede; worktree isolation)
    7. Background lifecycle (detached runs, history compaction)
"""

__version__ = "0.3.0"
