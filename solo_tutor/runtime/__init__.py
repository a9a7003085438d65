"""
Runtime Orchestration Module

WHAT: Runtime subsystem for the Solo Tutor conversational memory pipeline
WHERE: solo_tutor/runtime/ - orchestration layer above the datastore and model APIs
WHO: Service handlers answering a student's tutor turn
TIME: One stateless orchestration run per submitted turn

Provides the execution layer that turns a student utterance into a tutor
reply backed by long-term memory (embedding similarity across every
conversation the student owns) and short-term memory (the last few turns of
the active conversation).
"""

__all__ = ["memory"]
