"""
Requests module: the kanban work items and everything hanging off them
(comments, assignments, files, activity timeline).
"""
