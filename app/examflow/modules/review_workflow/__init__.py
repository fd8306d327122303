"""
Exam document review workflow.

- Documents move originator -> department approver -> final approver
- Versions are immutable; a new upload re-opens the cycle in DRAFT
- Reviewer feedback is append-only
- Every committed transition is recorded to the append-only audit trail
"""
