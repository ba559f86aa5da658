"""
Adapter dispatch table: one adapter per analysis capability.
"""

from typing import Dict, Optional

from app.models.jobs import Capability
from app.services.adapters.base import AnalysisAdapter
from app.services.adapters.text_analysis import TextAnalysisAdapter
from app.services.adapters.transcription import TranscriptionAdapter
from app.services.adapters.vision import (
    CelebrityDetectionAdapter,
    ObjectDetectionAdapter,
    TextDetectionAdapter,
)
from app.services.ledger import CostLedger
from app.services.storage import MediaStorage


def build_adapter_registry(
    ledger: CostLedger,
    storage: Optional[MediaStorage] = None,
) -> Dict[Capability, AnalysisAdapter]:
    storage = storage or MediaStorage()
    return {
        Capability.OBJECT_DETECTION: ObjectDetectionAdapter(ledger, storage),
        Capability.TEXT_DETECTION: TextDetectionAdapter(ledger, storage),
        Capability.CELEBRITY_DETECTION: CelebrityDetectionAdapter(ledger, storage),
        Capability.TRANSCRIPTION: TranscriptionAdapter(ledger, storage),
        Capability.TEXT_ANALYSIS: TextAnalysisAdapter(ledger),
    }
