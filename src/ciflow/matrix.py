# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Mapping, Sequence

from .errors import ConfigError
from .model import Strategy

MatrixEntry = Dict[str, Any]


class MatrixExpander:
    """
    Expand a job strategy into concrete matrix entries.

    Example:
        matrix = {"rust": ["stable", "prev"]}
        include = [{"rust": "stable", "coverage": "--enable-coverage"}]

        -> [{"rust": "stable", "coverage": "--enable-coverage"}, {"rust": "prev"}]

    Rules:
      - base dimensions form a cartesian product in declaration order
        (the last dimension varies fastest)
      - `exclude` entries drop every product entry they fully match
      - an `include` is merged into every entry whose original dimension
        values it does not contradict; values added by earlier includes
        may be overwritten, original values never are
      - an `include` that matches nothing becomes a standalone entry
      - no dimensions: the entries are exactly the includes, or one empty
        entry when there are no includes either
    """

    def __init__(self, job: str | None = None):
        self.job = job

    def expand(self, strategy: Strategy) -> List[MatrixEntry]:
        if strategy.max_parallel is not None and strategy.max_parallel < 1:
            raise ConfigError(
                message=f"max-parallel must be at least 1, got {strategy.max_parallel}",
                job=self.job,
            )
        return self.expand_dimensions(strategy.matrix, strategy.include, strategy.exclude)

    def expand_dimensions(
        self,
        dimensions: Mapping[str, Sequence[Any]],
        include: Sequence[Mapping[str, Any]] = (),
        exclude: Sequence[Mapping[str, Any]] = (),
    ) -> List[MatrixEntry]:
        self._validate(dimensions, include, exclude)

        if not dimensions:
            if not include:
                return [{}]
            return [dict(inc) for inc in include]

        keys = list(dimensions.keys())
        entries: List[MatrixEntry] = [
            dict(zip(keys, combo)) for combo in itertools.product(*(dimensions[k] for k in keys))
        ]

        if exclude:
            entries = [e for e in entries if not any(_matches(e, ex) for ex in exclude)]

        originals = [dict(e) for e in entries]
        standalone: List[MatrixEntry] = []
        for inc in include:
            merged_any = False
            for entry, original in zip(entries, originals):
                # only the original dimension values can veto a merge
                if all(original[k] == v for k, v in inc.items() if k in original):
                    entry.update({k: v for k, v in inc.items() if k not in original})
                    merged_any = True
            if not merged_any:
                standalone.append(dict(inc))

        return entries + standalone

    def _validate(
        self,
        dimensions: Mapping[str, Sequence[Any]],
        include: Sequence[Mapping[str, Any]],
        exclude: Sequence[Mapping[str, Any]],
    ) -> None:
        for key, values in dimensions.items():
            if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
                raise ConfigError(
                    message=f"Matrix dimension '{key}' must be a list of values",
                    job=self.job,
                    details={"value": values},
                )
            if len(values) == 0:
                raise ConfigError(
                    message=f"Matrix dimension '{key}' does not contain any values",
                    job=self.job,
                )

        for label, items in (("include", include), ("exclude", exclude)):
            for item in items:
                if not isinstance(item, Mapping):
                    raise ConfigError(
                        message=f"Matrix {label} entries must be mappings",
                        job=self.job,
                        details={"entry": item},
                    )

        for ex in exclude:
            unknown = sorted(k for k in ex if k not in dimensions)
            if unknown:
                raise ConfigError(
                    message=f"Matrix exclude keys {unknown} do not match any matrix dimension",
                    job=self.job,
                    details={"dimensions": list(dimensions)},
                )


def _matches(entry: Mapping[str, Any], pattern: Mapping[str, Any]) -> bool:
    return all(k in entry and entry[k] == v for k, v in pattern.items())


def expand_matrix(strategy: Strategy, job: str | None = None) -> List[MatrixEntry]:
    return MatrixExpander(job=job).expand(strategy)
