"""
In-app notifications with out-of-band delivery (outbox + worker pool).
"""
