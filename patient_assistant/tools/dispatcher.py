"""Validated invocation of catalog actions.

``ActionDispatcher.dispatch`` is a total function: whatever happens inside
(unknown action, bad parameters, ownership violation, backend outage,
programming error) the caller receives an ``ActionEnvelope``.
"""

from __future__ import annotations

import logging
from typing import Any

from patient_assistant.errors import DispatchError, ValidationError
from patient_assistant.models import ActionEnvelope
from patient_assistant.services.backend_client import BackendAPIError, PatientRecords
from patient_assistant.services.metrics import metrics
from patient_assistant.tools.catalog import CATALOG, ActionCatalog

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Validate parameters, enforce ownership and call the records backend."""

    def __init__(self, records: PatientRecords, catalog: ActionCatalog = CATALOG):
        self._records = records
        self._catalog = catalog

    @property
    def catalog(self) -> ActionCatalog:
        return self._catalog

    def dispatch(
        self,
        action: str,
        parameters: dict[str, Any] | None,
        patient_id: str,
    ) -> ActionEnvelope:
        envelope, _ = self.execute(action, parameters, patient_id)
        return envelope

    def execute(
        self,
        action: str,
        parameters: dict[str, Any] | None,
        patient_id: str,
    ) -> tuple[ActionEnvelope, dict[str, Any]]:
        """Dispatch *action* and also return the arguments it ran with.

        Those are the validated, resolved parameters in camelCase; the raw
        *parameters* come back unchanged when validation or resolution fails.
        """
        envelope, arguments = self._dispatch(action, parameters, patient_id)
        metrics.record_action(action, success=envelope.success, error_type=envelope.error_type)
        return envelope, arguments

    def _dispatch(
        self,
        action: str,
        parameters: dict[str, Any] | None,
        patient_id: str,
    ) -> tuple[ActionEnvelope, dict[str, Any]]:
        arguments = dict(parameters or {})
        spec = self._catalog.get(action)
        if spec is None:
            logger.warning("Model requested unknown action %r", action)
            return ActionEnvelope.fail(f"Unknown tool: {action}"), arguments

        try:
            params = spec.validate(arguments)
            if spec.resolver is not None:
                params = spec.resolver(self._records, params)
            arguments = params.model_dump(by_alias=True, mode="json", exclude_none=True)

            logger.info("Dispatching %s for patient %s", action, patient_id)
            return spec.handler(self._records, patient_id, params), arguments

        except ValidationError as exc:
            logger.info("Rejected %s parameters: %s", action, exc)
            envelope = ActionEnvelope.fail(
                str(exc),
                f"I couldn't run {action.replace('_', ' ')}: {exc}.",
                error_type="ValidationError",
            )
        except DispatchError as exc:
            logger.info("Dispatch of %s refused: %s", action, exc)
            envelope = ActionEnvelope.fail(str(exc), f"{exc}.")
        except BackendAPIError as exc:
            logger.error("Records backend failed during %s: %s", action, exc)
            envelope = ActionEnvelope.fail(
                str(exc),
                "The appointment system could not complete that request. Please try again shortly.",
            )
        except Exception as exc:
            logger.exception("Unexpected error while dispatching %s", action)
            envelope = ActionEnvelope.fail(
                str(exc) or type(exc).__name__,
                "Something went wrong while processing that request. Please try again.",
            )
        return envelope, arguments
