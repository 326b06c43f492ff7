"""Controller for pgtask custom resources."""

from __future__ import annotations

from pgo_controller.controllers.common import AcknowledgingController
from pgo_controller.models import STATE_COMPLETED, STATE_FAILED, STATE_PROCESSED


class PgtaskController(AcknowledgingController):
    # Tasks finished by their job must not be flipped back to "processed".
    final_states = frozenset({STATE_PROCESSED, STATE_COMPLETED, STATE_FAILED})
    message = "task accepted"
