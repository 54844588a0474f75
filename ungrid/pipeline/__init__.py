"""
Panel Orchestration Pipeline

Three sequential orchestrators sharing one RunGuard per session:
1. PanelOrchestrator - enhance panels extracted from a composite image
2. JobQueueOrchestrator - user-composed target + reference jobs
3. ChainExecutor - linear chain, each step feeding the next
"""
