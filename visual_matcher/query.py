"""
Query processing with supersession.

Exactly one QueryState is live. Submitting a new image replaces it
at once; work still running for an older query carries on, but its
result is dropped on arrival because its token no longer matches the
live state.
"""

import itertools
import logging
from dataclasses import replace
from typing import Optional

from .embedders import Classifier, Embedder, NullClassifier, predict_labels
from .errors import ClassificationError
from .image_loader import ImageLoader, ImageSource
from .models import QueryState, QueryStatus

logger = logging.getLogger(__name__)

QUERY_LABELS = 3


class QuerySession:
    """Owns the live QueryState."""

    def __init__(self,
                 embedder: Embedder,
                 image_loader: ImageLoader,
                 classifier: Optional[Classifier] = None):
        self.embedder = embedder
        self.image_loader = image_loader
        self.classifier = classifier or NullClassifier()
        self._tokens = itertools.count(1)
        self._state: Optional[QueryState] = None

    @property
    def state(self) -> Optional[QueryState]:
        return self._state

    def is_current(self, state: QueryState) -> bool:
        return self._state is not None and self._state.token == state.token

    async def submit(self, source: ImageSource) -> QueryState:
        """
        Load, embed and classify a query image.

        The returned state is the outcome of this submission. It is only
        installed as the live state if no newer submission arrived in
        the meantime. Failures become a FAILED state, never an exception.
        """
        state = QueryState(source=source, token=next(self._tokens))
        self._state = state

        try:
            image = await self.image_loader.load(source)
            state = self._install(replace(state, loaded=True))
            vector = await self.embedder.embed(image)
        except Exception as e:
            logger.error(f"Query {state.token} failed: {e}")
            return self._install(replace(state, status=QueryStatus.FAILED, error=str(e)))

        try:
            labels = await predict_labels(self.classifier, image, QUERY_LABELS)
        except ClassificationError as e:
            logger.warning(f"Query {state.token} classification failed: {e}")
            labels = []

        return self._install(replace(
            state, status=QueryStatus.READY, vector=vector, labels=tuple(labels)
        ))

    def _install(self, state: QueryState) -> QueryState:
        if self.is_current(state):
            self._state = state
        else:
            logger.debug(f"Discarding result of superseded query {state.token}")
        return state

    def clear(self) -> None:
        self._state = None
