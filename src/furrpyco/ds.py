"""
Module contents:
 - Monoid: a Protocol representing "things you can sum together". Useful for running concurrent computation and then
   merging results together. Accompanied with `msum` function.
 - MaybeResult and Failure: for computations where you don't want the first exception to crash everything down, but
   rather finish what can be finished and collect all exceptions at the end. This is what `mapreduce` returns.
"""

from abc import abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Generic, Iterable, Optional, Protocol, Type, TypeVar, runtime_checkable

from typing_extensions import Self

from furrpyco.errors import ComputationError, ParallelMapError


# *** Monoid ***
@runtime_checkable
class Monoid(Protocol):
    """Define a dataclass that represents the result of a single computation, and how two results are put together
    (`pd.concat`, `+`, set union, ...), and `msum` / `mapreduce` do the rest for you."""

    @abstractmethod
    def __add__(self, other: Self) -> Self:
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def empty(cls) -> Self:
        raise NotImplementedError


# NOTE the Type has to be passed explicitly, python has no way to infer it from the context
TMonoid = TypeVar("TMonoid", bound=Monoid)


def msum(i: Iterable[TMonoid], t: Type[TMonoid]) -> TMonoid:
    return sum(i, start=t.empty())


@dataclass
class Failure:
    """Represents a caught Exception of one element. `origin` describes the element, `index` is its position in the
    input and `trace` the traceback from wherever it was computed."""

    origin: str
    exception: BaseException
    index: Optional[int] = None
    trace: str = field(default="", repr=False)

    @classmethod
    def of(cls, error: ComputationError, arg: Any) -> "Failure":
        return cls(f"failure with args {arg}", error.error, error.index, error.trace)

    def as_error(self) -> ComputationError:
        return ComputationError(self.exception, self.index, self.trace)

    def __eq__(self, other: Any) -> bool:
        # NOTE we override since `Exception`'s eq is identity, which does not survive pickling
        if not isinstance(other, Failure):
            return False
        return (
            other.origin == self.origin
            and other.index == self.index
            and type(other.exception) is type(self.exception)
            and str(other.exception) == str(self.exception)
        )


@dataclass
class MaybeResult(Generic[TMonoid]):
    """Note this is *not* an Either-class, both `result` and `failure` may be filled -- the sum of whatever
    succeeded, next to whatever did not."""

    result: Optional[TMonoid]  # ideally, this would be just TMonoid. Alas, because of type erasure we couldnt `empty()`
    failure: list[Failure]

    @classmethod
    def empty(cls) -> Self:
        return cls(result=None, failure=[])

    @property
    def ok(self) -> bool:
        return not self.failure

    def __add__(self, other: Self) -> Self:
        if self.result is None:
            result = other.result
        elif other.result is None:
            result = self.result
        else:
            result = self.result + other.result
        return replace(self, result=result, failure=self.failure + other.failure)

    def unwrap(self) -> Optional[TMonoid]:
        """The result if nothing failed, ParallelMapError otherwise."""
        if self.ok:
            return self.result
        failures = {f.index if f.index is not None else -1 - i: f.as_error() for i, f in enumerate(self.failure)}
        raise ParallelMapError(failures)
