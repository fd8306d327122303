"""
Feature modules: ``review_workflow`` (documents, versions, feedback, the state
machine and its HTTP API) and ``notifications`` (outbox, delivery, inbox).
"""
