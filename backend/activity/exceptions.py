class ActivityError(Exception):
    """Base class for session activity tracker errors"""


class StoreUnavailable(ActivityError):
    """The secondary activity store (cache) could not be read or written"""


class InvalidationStepFailure(ActivityError):
    """One step of the session invalidation pipeline failed"""

    def __init__(self, step, original):
        self.step = step
        self.original = original
        super().__init__(f"Invalidation step '{step}' failed: {original}")
