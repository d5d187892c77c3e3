# -*- coding: utf-8 -*-
"""
Incentra - Engine exceptions

Fatal errors abort a run before anything is written; non-fatal ones are
caught where they occur and turned into flags on the affected result.
"""

from typing import Iterable, Optional


class CalculationEngineError(Exception):
    """Base class for every error raised by the engine"""


class NotFoundError(CalculationEngineError):
    """Tenant, period, rule set or batch does not exist"""


class ConfigurationError(CalculationEngineError):
    """Malformed plan configuration. Fatal for the whole run."""

    def __init__(self, component_name: Optional[str], message: str):
        self.component_name = component_name
        self.message = message
        prefix = f"Component '{component_name}': " if component_name else ''
        super().__init__(f"{prefix}{message}")


class DataResolutionError(CalculationEngineError):
    """No committed data bucket matches a derivation (non-fatal)"""

    def __init__(self, metric_name: str, source_pattern: str, reason: str = 'no_source_match'):
        self.metric_name = metric_name
        self.source_pattern = source_pattern
        self.reason = reason
        super().__init__(
            f"Metric '{metric_name}': no data matches source pattern '{source_pattern}' ({reason})"
        )


class VariantSelectionAmbiguity(CalculationEngineError):
    """Zero or several variants matched an entity (non-fatal)"""

    def __init__(self, entity_id: str, matched: Iterable[str]):
        self.entity_id = entity_id
        self.matched = list(matched)
        super().__init__(
            f"Entity {entity_id}: ambiguous variant selection (matched: {self.matched or 'none'})"
        )


class TransitionError(CalculationEngineError):
    """Invalid lifecycle transition. No state change happens."""

    def __init__(self, from_state, to_state, allowed=(), message: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = [getattr(s, 'value', s) for s in allowed]
        from_value = getattr(from_state, 'value', from_state)
        to_value = getattr(to_state, 'value', to_state)
        detail = message or f"Invalid transition: {from_value} -> {to_value}"
        super().__init__(f"{detail}. Allowed from {from_value}: {self.allowed or 'none'}")


class ConcurrentTransitionError(TransitionError):
    """Compare-and-swap on the batch state lost against another writer"""


class VisibilityError(CalculationEngineError):
    """Role may not observe a batch in its current state"""


class PersistenceError(CalculationEngineError):
    """Write failed; the transaction was rolled back"""


class CalculationCancelled(CalculationEngineError):
    """Run cancelled before results were written"""
