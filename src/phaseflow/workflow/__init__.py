"""Workflow state machine that drives a task through its ordinal phases.

A task moves through a fixed list of phases chosen by its workflow variant.
Each phase calls an external generation service exactly once; the phase only
advances when the service explicitly signals completion (or rewinds when it
signals rejection). Ordinary responses without a signal leave the task where
it is until the next external ``run``.
"""
