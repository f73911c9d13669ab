"""Adaptive Tutor - multi-agent tutoring orchestrator.

Routes each learner turn to a specialist agent, validates specialist
drafts, and decides lesson completion from recorded evidence.
"""
