"""
Knowledge services.

Services:
- RememberPipeline: two-phase preview/confirm writes
- AskEngine: answers from current facts along the scope path
- EscalationManager: team questions, answers and Raven follow-ups
- LearningObjectiveScheduler: Raven-driven objectives within a question budget
"""
