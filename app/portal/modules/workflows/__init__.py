"""
Workflow rules and the engine that evaluates them on request events.
"""
