# gmm_em/_restarts.py
"""Independent EM fits from several initial guesses, best one kept."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

from joblib import Parallel, delayed

from ._em import EMConfig, EMResult, MixtureParams, fit_em
from .exceptions import DegenerateComponentError, InvalidConfigurationError

logger = logging.getLogger(__name__)


def _fit_one(X, init: MixtureParams, config: Optional[EMConfig]) -> Union[EMResult, DegenerateComponentError]:
    try:
        return fit_em(X, init, config)
    except DegenerateComponentError as exc:
        return exc


def fit_restarts(
    X,
    inits: Sequence[MixtureParams],
    config: Optional[EMConfig] = None,
    n_jobs: Optional[int] = None,
) -> EMResult:
    """Run fit_em once per initial guess and return the highest log-likelihood fit.

    Fits share nothing, so they run through joblib (threads; torch releases the
    GIL). A fit aborted by DegenerateComponentError is skipped; if every fit
    aborts, the last such error is raised. Configuration errors propagate.
    """
    if len(inits) == 0:
        raise InvalidConfigurationError("at least one initial guess is required")

    outcomes = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_fit_one)(X, init, config) for init in inits
    )

    best: Optional[EMResult] = None
    last_error: Optional[DegenerateComponentError] = None
    for i, out in enumerate(outcomes):
        if isinstance(out, DegenerateComponentError):
            logger.info("restart %d aborted: %s", i, out)
            last_error = out
            continue
        if best is None or out.log_likelihood > best.log_likelihood:
            best = out

    if best is None:
        assert last_error is not None
        raise last_error
    return best
