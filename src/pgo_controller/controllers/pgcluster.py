"""Controller for pgcluster custom resources."""

from __future__ import annotations

from pgo_controller.controllers.common import AcknowledgingController


class PgclusterController(AcknowledgingController):
    message = "cluster accepted"
