import dataclasses
import enum
import logging


logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    """
    The possible outcomes of a step in a reconcile pass.
    """
    #: Proceed to the next step
    CONTINUE = "Continue"
    #: The pass finished early and was successful
    DONE = "Done"
    #: The pass must be aborted
    ERROR = "Error"


@dataclasses.dataclass(frozen = True)
class ReconcileResult:
    """
    The result of a step in a reconcile pass.
    """
    #: The outcome of the step
    outcome: Outcome
    #: The cause of the failure, for the error outcome
    cause: Exception | None = None

    @classmethod
    def continue_(cls):
        return cls(Outcome.CONTINUE)

    @classmethod
    def done(cls):
        return cls(Outcome.DONE)

    @classmethod
    def error(cls, cause):
        return cls(Outcome.ERROR, cause)

    @property
    def is_continue(self):
        return self.outcome is Outcome.CONTINUE

    @property
    def is_done(self):
        return self.outcome is Outcome.DONE

    @property
    def is_error(self):
        return self.outcome is Outcome.ERROR

    @property
    def completed(self):
        """
        Indicates if the pass should stop at this result.
        """
        return not self.is_continue


async def run_pipeline(ctx, steps):
    """
    Runs the given steps in order for the context and returns the result of the pass.

    The pass stops at the first step that is done or fails. If every step continues,
    the pass is done.
    """
    for step in steps:
        result = await step(ctx)
        if result.completed:
            logger.debug(
                "pass stopped at step %s with %s",
                getattr(step, "__name__", step),
                result.outcome.value
            )
            return result
    return ReconcileResult.done()
