"""
Declarative Model Specification
===============================

One specification, two renderings:

- SEM (semopy syntax), fitted to the wide table:

      intercept =~ 1*y1 + 1*y2 + 1*y3 + 1*y4
      slope =~ 0*y1 + 1*y2 + 2*y3 + 3*y4
      intercept ~~ slope

- Linear mixed model (statsmodels formulas), fitted to the long table:

      fixed:   y ~ time
      random:  1 + time     (grouped by unit)

Residual structure "heterogeneous" gives every item its own residual
variance (one per time point in the mixed model); "homogeneous"
constrains them to a single value (semopy parameter label shared by all
items).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from lmmsem.simulation.latent_simulator import LatentSpec

VALID_RESIDUAL_STRUCTURES = ('heterogeneous', 'homogeneous')
SUPPORTED_FACTORS = ('intercept', 'slope')
EQUAL_RESIDUAL_LABEL = 'theta'


def _format_number(value: float) -> str:
    """Render a fixed loading compactly (1.0 -> '1', 0.5 -> '0.5')."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


@dataclass(frozen=True, eq=False)
class GrowthModelSpec:
    """
    Model specification shared by the SEM and mixed model fitters.

    Attributes:
        factor_names: Latent factors / random effects, ('intercept',) or
                      ('intercept', 'slope')
        item_names: Observed variables in time order
        loadings: Fixed loading matrix (K x F)
        residual_structure: 'heterogeneous' or 'homogeneous'
        free_loadings: factor -> items whose loading is estimated (SEM only)
    """
    factor_names: Tuple[str, ...]
    item_names: Tuple[str, ...]
    loadings: np.ndarray
    residual_structure: str = 'heterogeneous'
    free_loadings: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self):
        loadings = np.array(self.loadings, dtype=float)
        if loadings.ndim == 1:
            loadings = loadings[:, None]
        factor_names = tuple(self.factor_names)
        item_names = tuple(self.item_names)

        if loadings.shape != (len(item_names), len(factor_names)):
            raise ValueError(
                f"Loading matrix shape {loadings.shape} does not match "
                f"{len(item_names)} items x {len(factor_names)} factors"
            )
        if self.residual_structure not in VALID_RESIDUAL_STRUCTURES:
            raise ValueError(
                f"Invalid residual structure: {self.residual_structure}. "
                f"Must be one of {VALID_RESIDUAL_STRUCTURES}"
            )
        free = {f: tuple(items) for f, items in dict(self.free_loadings).items()}
        for factor, items in free.items():
            if factor not in factor_names:
                raise ValueError(f"Free loadings given for unknown factor '{factor}'")
            unknown = [i for i in items if i not in item_names]
            if unknown:
                raise ValueError(f"Free loadings given for unknown items {unknown}")

        loadings.setflags(write=False)
        object.__setattr__(self, 'loadings', loadings)
        object.__setattr__(self, 'factor_names', factor_names)
        object.__setattr__(self, 'item_names', item_names)
        object.__setattr__(self, 'free_loadings', free)

    @classmethod
    def from_latent_spec(cls, spec: LatentSpec,
                         residual_structure: str = 'heterogeneous') -> 'GrowthModelSpec':
        """Analysis model matching the generative structure."""
        return cls(
            factor_names=spec.factor_names,
            item_names=spec.item_names,
            loadings=spec.loadings,
            residual_structure=residual_structure,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def n_items(self) -> int:
        return len(self.item_names)

    @property
    def n_factors(self) -> int:
        return len(self.factor_names)

    @property
    def has_slope(self) -> bool:
        return 'slope' in self.factor_names

    @property
    def has_free_loadings(self) -> bool:
        return any(self.free_loadings.values())

    @property
    def time_scores(self) -> np.ndarray:
        """Slope loadings, or item positions when there is no slope."""
        if self.has_slope:
            return np.asarray(self.loadings[:, self.factor_names.index('slope')])
        return np.arange(self.n_items, dtype=float)

    def loading_matrix(self, free_values: Optional[Dict[Tuple[str, str], float]] = None
                       ) -> np.ndarray:
        """Loading matrix with estimated values substituted for free loadings."""
        lam = np.array(self.loadings, dtype=float)
        for (factor, item), value in (free_values or {}).items():
            lam[self.item_names.index(item), self.factor_names.index(factor)] = value
        return lam

    # -------------------------------------------------------------------------
    # SEM rendering
    # -------------------------------------------------------------------------

    def to_semopy(self) -> str:
        """Render the model in semopy (lavaan-like) syntax."""
        lines: List[str] = []
        for f, factor in enumerate(self.factor_names):
            free = set(self.free_loadings.get(factor, ()))
            terms = []
            for k, item in enumerate(self.item_names):
                if item in free:
                    terms.append(item)
                else:
                    terms.append(f"{_format_number(self.loadings[k, f])}*{item}")
            lines.append(f"{factor} =~ " + " + ".join(terms))

        if self.n_factors == 2:
            lines.append(f"{self.factor_names[0]} ~~ {self.factor_names[1]}")

        if self.residual_structure == 'homogeneous':
            for item in self.item_names:
                lines.append(f"{item} ~~ {EQUAL_RESIDUAL_LABEL}*{item}")

        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Mixed model rendering
    # -------------------------------------------------------------------------

    def _check_mixed_model_compatible(self) -> None:
        if self.has_free_loadings:
            raise ValueError(
                "Free loadings cannot be expressed as a linear mixed model; "
                "all loadings must be fixed to the time design"
            )
        unsupported = [f for f in self.factor_names if f not in SUPPORTED_FACTORS]
        if unsupported:
            raise ValueError(f"Mixed model supports factors {SUPPORTED_FACTORS}, "
                             f"got {unsupported}")
        intercept = self.loadings[:, self.factor_names.index('intercept')]
        if not np.allclose(intercept, 1.0):
            raise ValueError("Intercept loadings must all be fixed to 1 for a mixed model")

    def fixed_formula(self, response: str = 'y', time: str = 'time') -> str:
        """Fixed-effects formula: y ~ 1 or y ~ time."""
        self._check_mixed_model_compatible()
        return f"{response} ~ {time}" if self.has_slope else f"{response} ~ 1"

    def re_formula(self, time: str = 'time') -> str:
        """Random-effects formula within unit: 1 or 1 + time."""
        self._check_mixed_model_compatible()
        return f"1 + {time}" if self.has_slope else "1"

    def fixed_effect_names(self, time: str = 'time') -> Dict[str, str]:
        """Map statsmodels fixed-effect names to factor names."""
        names = {'Intercept': 'intercept'}
        if self.has_slope:
            names[time] = 'slope'
        return names


def model_spec_for_items(item_names: Sequence[str], with_slope: bool = False,
                         time_scores: Optional[Sequence[float]] = None,
                         residual_structure: str = 'heterogeneous') -> GrowthModelSpec:
    """Build an intercept-only or intercept+slope specification from item names."""
    n_items = len(item_names)
    ones = np.ones(n_items)
    if not with_slope:
        return GrowthModelSpec(('intercept',), tuple(item_names), ones[:, None],
                               residual_structure=residual_structure)
    if time_scores is None:
        time_scores = np.arange(n_items, dtype=float)
    loadings = np.column_stack([ones, np.asarray(time_scores, dtype=float)])
    return GrowthModelSpec(('intercept', 'slope'), tuple(item_names), loadings,
                           residual_structure=residual_structure)
