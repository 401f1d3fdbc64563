import numpy as np
import pandas as pd
import pytest

from furrpyco.pa import MPConfig, MultiProcess, Sequential, Session
from furrpyco.pd.frames import parallel_map_dfc, parallel_map_dfr
from furrpyco.pd.vectors import parallel_map_chr, parallel_map_dbl, parallel_map_int, parallel_map_lgl


def half(x: int) -> float:
    return x / 2


def negate(x: int) -> int:
    return -x


def is_even(x: int) -> bool:
    return x % 2 == 0


def shout(s: str) -> str:
    return s.upper()


def shout_or_pass(x):
    return x.upper() if isinstance(x, str) else x


def summary(x: int) -> dict:
    return {"x": x, "square": x * x}


def repeated(x: int) -> pd.DataFrame:
    return pd.DataFrame({"value": [x] * x})


def as_series(x: int) -> pd.Series:
    return pd.Series([x, x + 1], name=f"c{x}")


def unnamed(x: int) -> pd.Series:
    return pd.Series([x, 2 * x])


def as_lists(x: int) -> dict:
    return {f"l{x}": [x, x + 10]}


def as_scalars(x: int) -> dict:
    return {f"s{x}": x, f"t{x}": -x}


@pytest.fixture(params=["sequential", "multiprocess"])
def session(request):
    if request.param == "sequential":
        yield Session([Sequential()])
    else:
        with Session([MultiProcess(MPConfig(parallelism=2))]) as session:
            yield session


def test_typed_vectors(session):
    dbl = parallel_map_dbl([1, 2, 3], half, session=session)
    assert dbl.dtype == np.float64
    np.testing.assert_array_equal(dbl, [0.5, 1.0, 1.5])

    ints = parallel_map_int([1, 2], negate, session=session)
    assert ints.dtype == np.int64
    np.testing.assert_array_equal(ints, [-1, -2])

    lgl = parallel_map_lgl([1, 2, 3], is_even, session=session)
    assert lgl.dtype == np.bool_
    assert lgl.tolist() == [False, True, False]

    chr_ = parallel_map_chr(["a", "b"], shout, session=session)
    assert chr_.tolist() == ["A", "B"]


def test_integers_are_doubles():
    assert parallel_map_dbl([1, 2], negate, session=Session([Sequential()])).tolist() == [-1.0, -2.0]


def test_wrong_type_names_the_element():
    with pytest.raises(ValueError, match="element 1"):
        parallel_map_dbl([1, "2"], shout_or_pass, session=Session([Sequential()]))
    with pytest.raises(ValueError, match="element 0"):
        parallel_map_int([0.5], abs, session=Session([Sequential()]))
    with pytest.raises(ValueError):
        parallel_map_lgl([1], negate, session=Session([Sequential()]))
    with pytest.raises(ValueError):
        parallel_map_chr([1], negate, session=Session([Sequential()]))


def test_empty_vectors():
    empty = parallel_map_dbl([], half, session=Session([Sequential()]))
    assert empty.dtype == np.float64
    assert len(empty) == 0


def test_row_binding(session):
    frame = parallel_map_dfr([1, 2, 3], summary, session=session)
    assert list(frame.columns) == ["x", "square"]
    assert frame["square"].tolist() == [1, 4, 9]
    assert frame.index.tolist() == [0, 1, 2]

    tagged = parallel_map_dfr([1, 2], repeated, id_column="element", session=session)
    assert list(tagged.columns) == ["element", "value"]
    assert tagged["element"].tolist() == [0, 1, 1]
    assert tagged["value"].tolist() == [1, 2, 2]


def test_column_binding(session):
    frame = parallel_map_dfc([1, 2], as_series, session=session)
    assert list(frame.columns) == ["c1", "c2"]
    assert frame["c2"].tolist() == [2, 3]

    frame = parallel_map_dfc([1, 3], unnamed, session=session)
    assert list(frame.columns) == [0, 1]
    assert frame[1].tolist() == [3, 6]


def test_column_binding_dicts(session):
    frame = parallel_map_dfc([1, 2], as_lists, session=session)
    assert list(frame.columns) == ["l1", "l2"]
    assert frame["l2"].tolist() == [2, 12]

    # dicts of scalars make up a single row
    frame = parallel_map_dfc([1, 2], as_scalars, session=session)
    assert list(frame.columns) == ["s1", "t1", "s2", "t2"]
    assert len(frame) == 1
    assert frame["t2"].tolist() == [-2]


def test_binding_rejects_scalars():
    with pytest.raises(ValueError, match="element 0"):
        parallel_map_dfr([1], negate, session=Session([Sequential()]))
    with pytest.raises(ValueError, match="element 0"):
        parallel_map_dfc([1], negate, session=Session([Sequential()]))


def test_empty_frames():
    assert parallel_map_dfr([], summary, session=Session([Sequential()])).empty
    assert parallel_map_dfc([], as_series, session=Session([Sequential()])).empty
