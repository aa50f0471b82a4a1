"""
Pipeline execution core for page-level LLM document processing.

Modules
-------
config         – Batching / retry settings and consolidation weights
schemas        – Pydantic models for steps, raw answers, outcomes and runs
batching       – Page → batch grouping under page-count and character budgets
json_relaxed   – Lenient JSON decoding of model replies
gateway        – Model gateway protocol, OpenAI backend, timeout/retry client
normalize      – Number / boolean / string normalisers
evidence       – Quote → page re-anchoring
consolidation  – Field, score and decision reducers
run_log        – Ordered per-step audit log
orchestrator   – Sequential step execution with route filtering
results        – Run outcome → persisted / published result
"""
