from dataclasses import dataclass
from typing import Optional
from .models import Stage


@dataclass
class WizardState:
    stage: Stage = Stage.WELCOME
    progress: int = 0
    processed: int = 0
    total: int = 0
    current_artifact: str = ""
    defect_count: int = 0
    analysis_error: Optional[str] = None
    closed: bool = False

    def reset_progress(self, total: int) -> None:
        self.progress = 0
        self.processed = 0
        self.total = total
        self.current_artifact = ""
        self.defect_count = 0
        self.analysis_error = None
