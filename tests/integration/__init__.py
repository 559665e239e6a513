"""
Integration Tests for CREDFLOW

Integration tests cover end-to-end scenarios:
- Trigger -> queue -> worker -> engine -> resume
- Failures recorded on executions and steps
- Database persistence of the audit trail
"""
