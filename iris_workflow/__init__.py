"""
Iris Workflow - staged generation of gardening blog articles.

Modules:
- state: GenerationState and the StateStore that owns it
- validation: precondition gate run before dispatching a stage
- dispatcher: per-channel sequential execution of collaborator calls
- orchestrator: the stage machine from topic to finished article
- enrichment: draft, media and rewrite steps built on collaborators
- collaborators: Ok/Err results and collaborator protocols
- clients: OpenAI generation and SQL persistence collaborators
"""

from iris_workflow.collaborators import Err, ErrorRecord, Ok
from iris_workflow.dispatcher import TaskDispatcher
from iris_workflow.orchestrator import StageOrchestrator
from iris_workflow.state import GenerationState, StateStore, create_initial_state
from iris_workflow.validation import PreconditionRule, PreconditionValidator

__all__ = [
    "Ok", "Err", "ErrorRecord",
    "GenerationState", "StateStore", "create_initial_state",
    "PreconditionRule", "PreconditionValidator",
    "TaskDispatcher", "StageOrchestrator",
]
