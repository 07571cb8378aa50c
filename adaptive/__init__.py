"""Adaptive retraining loop.

Outcomes arrive, become labeled samples, and periodically drive a new
training job. A new model reaches production only through the registry:

    outcome -> LabeledSample -> trigger -> TrainingJob -> comparison
            -> deploy gate -> shadow mode -> promote or discard

Module Structure:
-----------------
adaptive/
├── outcomes.py      - OutcomeEvent labeling
├── jobs.py          - TrainingJob records and the single job slot
└── auto_trainer.py  - Trigger policy, pipeline and shadow evaluation

Nothing here is on the serving path; inference only reads the registry.
"""

from __future__ import annotations

from adaptive.auto_trainer import AutoTrainer, ShadowEvaluation, TriggerDecision
from adaptive.jobs import JobSlot, JobStatus, TrainingJob, TrainingTrigger
from adaptive.outcomes import OutcomeEvent, label_outcome

__all__ = [
    "AutoTrainer",
    "ShadowEvaluation",
    "TriggerDecision",
    "JobSlot",
    "JobStatus",
    "TrainingJob",
    "TrainingTrigger",
    "OutcomeEvent",
    "label_outcome",
]
