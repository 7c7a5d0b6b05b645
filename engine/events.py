"""
Structured events produced by the engine for logging / dashboards.

A run owns one EventBus; listeners are plain callables taking the event
dict. Listener failures are logged and never interrupt the evaluation.
"""
import logging

EVENT_LEVEL_FILLED = 'level_filled'
EVENT_LEVEL_CLOSED = 'level_closed'
EVENT_REBALANCED = 'rebalanced'
EVENT_RISK_REJECTED = 'risk_rejected'

EVENT_TYPES = (EVENT_LEVEL_FILLED, EVENT_LEVEL_CLOSED,
               EVENT_REBALANCED, EVENT_RISK_REJECTED)

logger = logging.getLogger('events')


class EventBus:

    def __init__(self, keep_history: bool = True):
        self._listeners = []
        self.keep_history = keep_history
        self.history = []
        self.counts = {name: 0 for name in EVENT_TYPES}

    def subscribe(self, listener):
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: str, symbol: str, timestamp: float, **payload) -> dict:
        if event_type not in self.counts:
            raise ValueError(f"Unknown event type '{event_type}'")
        event = {'type': event_type, 'symbol': symbol, 'timestamp': timestamp}
        event.update(payload)
        self.counts[event_type] += 1
        if self.keep_history:
            self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event_type}: {e}", exc_info=True)
        return event
