import multiprocessing
from enum import Enum
from math import floor
from typing import Literal
from typing import NamedTuple

import numpy as np
import pandas as pd
from scipy.linalg import solve  # type: ignore
from scipy.optimize import LinearConstraint  # type: ignore
from scipy.optimize import minimize  # type: ignore
from scipy.special import betaln  # type: ignore
from scipy.special import polygamma  # type: ignore
from scipy.special import xlogy  # type: ignore
from scipy.stats import chi2  # type: ignore
from scipy.stats import f  # type: ignore
from sklearn.linear_model import LinearRegression  # type: ignore
from statsmodels.stats.multitest import multipletests  # type: ignore

# Above this size parameter (1 / dispersion), digamma and trigamma differences are
# evaluated with their asymptotic expansions to avoid catastrophic cancellation.
_ASYMPTOTIC_SIZE = 1e4


class FitStrategy(str, Enum):
    """Fitting strategy for the mean-dispersion GLM.

    ``PLAIN`` fits a negative binomial mean-dispersion model by Fisher scoring.
    ``ZERO_INFLATED`` wraps the same fit in an EM loop estimating a point mass at
    zero.
    """

    PLAIN = "plain"
    ZERO_INFLATED = "zero_inflated"


class FeatureFit(NamedTuple):
    """Fitted mean-dispersion GLM of a single feature."""

    beta: np.ndarray
    """Mean model coefficients, in natural log scale."""

    gamma: np.ndarray
    """Dispersion model coefficients, in natural log scale."""

    zi_prop: float
    """Zero-inflation proportion, in [0, 1]."""

    information: np.ndarray
    """Information matrix of the stacked ``(beta, gamma)`` coefficients."""

    converged: bool
    """Whether the optimizer met its tolerance within the iteration budget."""

    n_iter: int
    """Number of iterations performed (EM iterations for zero-inflated fits)."""

    singular: bool
    """Whether the information matrix is numerically singular."""

    log_lik: float
    """Log-likelihood at the returned estimate."""

    zi_stat: float
    """Likelihood ratio statistic of the zero-inflated vs. the plain model."""

    zi_pvalue: float
    """P-value of the zero-inflation likelihood ratio test."""

    disp_bounded: bool = False
    """Whether the dispersion of some observation sits on ``min_disp`` or
    ``max_disp``, in which case dispersion coefficients are boundary estimates."""


class OutlierReport(NamedTuple):
    """Result of influence-based outlier detection for a single feature."""

    status: int
    """0 if clean, 1 if the refit did not converge, 2 if its information is singular,
    3 if influence could not be computed."""

    n_outliers: int
    """Number of flagged observations."""

    outlier_idx: np.ndarray
    """Positions of the flagged observations."""

    cleaned_counts: np.ndarray
    """Counts with flagged observations replaced by NaN."""

    influence: np.ndarray
    """Per-observation influence statistic (generalized Cook's distance)."""

    cutoff: float
    """Influence cutoff above which observations are flagged."""

    fit: FeatureFit
    """Fit of the model on the cleaned counts."""


def test_valid_counts(counts: pd.DataFrame | np.ndarray) -> None:
    """Test that the count matrix contains valid inputs.

    More precisely, test that inputs are non-negative integers.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
        Raw counts. One column per feature, rows are indexed by sample barcodes.
    """
    if isinstance(counts, pd.DataFrame):
        if counts.isna().any().any():
            raise ValueError("NaNs are not allowed in the count matrix.")
        if ~counts.apply(
            lambda s: pd.to_numeric(s, errors="coerce").notnull().all()
        ).all():
            raise ValueError("The count matrix should only contain numbers.")
    else:
        if not np.issubdtype(counts.dtype, np.number):
            raise ValueError("The count matrix should only contain numbers.")
        if np.isnan(counts).any():
            raise ValueError("NaNs are not allowed in the count matrix.")
    if (counts % 1 != 0).any().any():
        raise ValueError("The count matrix should only contain integers.")
    if (counts < 0).any().any():
        raise ValueError("The count matrix should only contain non-negative values.")


def check_design(design_matrix: pd.DataFrame | np.ndarray, num_samples: int) -> None:
    """Check that a design matrix can be used to fit mean-dispersion GLMs.

    Parameters
    ----------
    design_matrix : pandas.DataFrame or ndarray
        Design matrix, one row per sample.

    num_samples : int
        Number of samples of the count matrix.
    """
    values = np.asarray(design_matrix, dtype=float)
    if values.ndim != 2:
        raise ValueError("The design matrix should be two-dimensional.")
    if values.shape[0] != num_samples:
        raise ValueError(
            f"The design matrix has {values.shape[0]} rows but the count matrix has "
            f"{num_samples} samples."
        )
    if np.isnan(values).any():
        raise ValueError("NaNs are not allowed in the design.")
    if np.linalg.matrix_rank(values) < values.shape[1]:
        raise ValueError(
            "The design matrix is not full rank, so the model cannot be fitted. "
            "Please remove the design variables that are linear combinations of "
            "others."
        )


def nb_loglik(
    counts: np.ndarray, mu: np.ndarray, alpha: float | np.ndarray
) -> np.ndarray:
    r"""Per-observation log-likelihood of a negative binomial.

    The negative binomial is parametrized by its mean :math:`\mu` and dispersion
    :math:`\alpha`, s.t. the variance is :math:`\mu + \alpha \mu^2`:

    .. math::
        \log p(y | \mu, \alpha) = \log \frac{\Gamma(y + \alpha^{-1})}{
            \Gamma(y + 1)\Gamma(\alpha^{-1})}
        - \alpha^{-1} \log(1 + \alpha \mu)
        + y \log \frac{\alpha \mu}{1 + \alpha \mu}

    The Gamma ratio is evaluated through the log beta function, which remains
    accurate when :math:`\alpha` is close to zero.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Mean of the distribution :math:`\mu`.

    alpha : float or ndarray
        Dispersion of the distribution :math:`\alpha`.

    Returns
    -------
    ndarray
        Log-likelihood of each observation.
    """
    counts, mu, alpha = np.broadcast_arrays(
        np.asarray(counts, dtype=float), mu, alpha
    )
    size = 1.0 / alpha
    positive = counts > 0
    safe_counts = np.where(positive, counts, 1.0)
    log_binom = np.where(positive, -np.log(safe_counts) - betaln(safe_counts, size), 0.0)
    log1p_amu = np.log1p(alpha * mu)
    return (
        log_binom
        - size * log1p_amu
        + xlogy(counts, alpha * mu)
        - counts * log1p_amu
    )


def nb_nll(
    counts: np.ndarray,
    mu: np.ndarray,
    alpha: float | np.ndarray,
    weights: np.ndarray | None = None,
) -> float:
    """Weighted negative log-likelihood of a negative binomial sample.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Mean of the distribution.

    alpha : float or ndarray
        Dispersion of the distribution, s.t. the variance is
        :math:`\\mu + \\alpha\\mu^2`.

    weights : ndarray, optional
        Observation weights. (default: ``None``).

    Returns
    -------
    float
        Negative log-likelihood of the observations.
    """
    ll = nb_loglik(counts, mu, alpha)
    if weights is not None:
        ll = weights * ll
    return -ll.sum()


def _digamma_diff(counts: np.ndarray, size: np.ndarray) -> np.ndarray:
    """Return psi(counts + size) - psi(size)."""
    asymptotic = (
        np.log1p(counts / size)
        + counts / (2 * size * (size + counts))
        + counts * (2 * size + counts) / (12 * size**2 * (size + counts) ** 2)
    )
    exact = polygamma(0, counts + size) - polygamma(0, size)
    return np.where(size > _ASYMPTOTIC_SIZE, asymptotic, exact)


def _trigamma_diff(counts: np.ndarray, size: np.ndarray) -> np.ndarray:
    """Return psi'(size) - psi'(counts + size)."""
    upper = size + counts
    asymptotic = (
        counts / (size * upper)
        + counts * (2 * size + counts) / (2 * size**2 * upper**2)
        + counts
        * (3 * size**2 + 3 * size * counts + counts**2)
        / (6 * size**3 * upper**3)
    )
    exact = polygamma(1, size) - polygamma(1, upper)
    return np.where(size > _ASYMPTOTIC_SIZE, asymptotic, exact)


def md_score(
    counts: np.ndarray, mu: np.ndarray, alpha: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    r"""Per-observation score of the mean-dispersion negative binomial.

    Derivatives of the log-likelihood with respect to the linear predictors
    :math:`\eta_\mu = \log \mu` and :math:`\eta_\alpha = \log \alpha`. Writing
    :math:`r = \alpha^{-1}`:

    .. math::
        \frac{\partial \ell}{\partial \eta_\mu} = \frac{y - \mu}{1 + \alpha\mu},
        \qquad
        \frac{\partial \ell}{\partial \eta_\alpha} =
        r \left( \psi(r) - \psi(y + r) + \log(1 + \alpha\mu) \right)
        + \frac{y - \mu}{1 + \alpha\mu}

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Means.

    alpha : ndarray
        Dispersions.

    Returns
    -------
    score_mean : ndarray
        Derivative with respect to the mean linear predictor.

    score_disp : ndarray
        Derivative with respect to the dispersion linear predictor.
    """
    counts, mu, alpha = np.broadcast_arrays(
        np.asarray(counts, dtype=float), mu, alpha
    )
    size = 1.0 / alpha
    score_mean = (counts - mu) / (1 + alpha * mu)
    score_disp = (
        size * (np.log1p(alpha * mu) - _digamma_diff(counts, size)) + score_mean
    )
    return score_mean, score_disp


def md_information(
    counts: np.ndarray, mu: np.ndarray, alpha: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    r"""Per-observation information weights of the mean-dispersion negative binomial.

    The mean weight is the expected information :math:`\mu / (1 + \alpha\mu)`. The
    dispersion weight is the observed information
    :math:`-\partial^2 \ell / \partial \eta_\alpha^2`, which has a closed form in
    trigamma functions. The expected cross term is zero.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Means.

    alpha : ndarray
        Dispersions.

    Returns
    -------
    info_mean : ndarray
        Information weights for the mean linear predictor.

    info_disp : ndarray
        Information weights for the dispersion linear predictor.
    """
    counts, mu, alpha = np.broadcast_arrays(
        np.asarray(counts, dtype=float), mu, alpha
    )
    size = 1.0 / alpha
    info_mean = mu / (1 + alpha * mu)
    _, score_disp = md_score(counts, mu, alpha)
    info_disp = (
        score_disp
        + size**2 * _trigamma_diff(counts, size)
        - info_mean
        + (mu - counts) / (1 + alpha * mu) ** 2
    )
    return info_mean, info_disp


def md_information_matrix(
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    info_mean: np.ndarray,
    info_disp: np.ndarray,
    info_cross: np.ndarray | None = None,
) -> np.ndarray:
    """Assemble the block information matrix of the stacked coefficients.

    Parameters
    ----------
    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    info_mean : ndarray
        (Weighted) information weights of the mean linear predictor.

    info_disp : ndarray
        (Weighted) information weights of the dispersion linear predictor.

    info_cross : ndarray, optional
        Cross information weights of the two linear predictors. If ``None``, the
        cross term is zero, as for the negative binomial. (default: ``None``).

    Returns
    -------
    ndarray
        Square information matrix with a mean block, a dispersion block and a
        cross term.
    """
    num_vars = design_matrix.shape[1]
    num_disp_vars = disp_design_matrix.shape[1]
    information = np.zeros((num_vars + num_disp_vars, num_vars + num_disp_vars))
    information[:num_vars, :num_vars] = (design_matrix.T * info_mean) @ design_matrix
    information[num_vars:, num_vars:] = (
        disp_design_matrix.T * info_disp
    ) @ disp_design_matrix
    if info_cross is not None:
        cross = (design_matrix.T * info_cross) @ disp_design_matrix
        information[:num_vars, num_vars:] = cross
        information[num_vars:, :num_vars] = cross.T
    return information


def is_singular(information: np.ndarray, max_cond: float = 1e12) -> bool:
    """Check whether an information matrix is numerically singular.

    The matrix is rescaled to unit diagonal before computing its condition number,
    so that the verdict does not depend on the scale of the coefficients.

    Parameters
    ----------
    information : ndarray
        Square information matrix.

    max_cond : float
        Largest acceptable condition number of the rescaled matrix.
        (default: ``1e12``).

    Returns
    -------
    bool
        Whether the matrix should be considered singular.
    """
    if not np.isfinite(information).all():
        return True
    diag = np.diag(information)
    if (diag <= 0).any():
        return True
    scale = 1 / np.sqrt(diag)
    scaled = information * scale[:, None] * scale[None, :]
    try:
        np.linalg.cholesky(scaled)
    except np.linalg.LinAlgError:
        return True
    return bool(np.linalg.cond(scaled) > max_cond)


def _mean_disp(
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray,
    beta: np.ndarray,
    gamma: np.ndarray,
    min_mu: float,
) -> tuple[np.ndarray, np.ndarray]:
    mu = np.maximum(np.exp(design_matrix @ beta + offset), min_mu)
    alpha = np.exp(disp_design_matrix @ gamma)
    return mu, alpha


def _out_of_bounds(
    disp_design_matrix: np.ndarray, gamma: np.ndarray, min_disp: float, max_disp: float
) -> bool:
    eta = disp_design_matrix @ gamma
    return bool(
        not np.isfinite(eta).all()
        or (eta < np.log(min_disp)).any()
        or (eta > np.log(max_disp)).any()
    )


def _on_bounds(
    disp_design_matrix: np.ndarray,
    gamma: np.ndarray,
    min_disp: float,
    max_disp: float,
    tol: float = 1e-4,
) -> bool:
    eta = disp_design_matrix @ gamma
    return bool(
        (eta <= np.log(min_disp) + tol).any() or (eta >= np.log(max_disp) - tol).any()
    )


def _is_pos_def(matrix: np.ndarray) -> bool:
    try:
        np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        return False
    return True


def _initial_estimates(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray,
    weights: np.ndarray,
    min_mu: float,
    max_disp: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Least-squares starting values for the mean and dispersion coefficients."""
    num_vars = design_matrix.shape[1]
    y = np.log(counts / np.exp(offset) + 0.1)

    # if full rank, estimate initial betas by least squares on log counts
    if np.linalg.matrix_rank(design_matrix) == num_vars:
        Q, R = np.linalg.qr(design_matrix)
        beta = solve(R, Q.T @ y)
    else:  # Initialise intercept with log base mean
        beta = np.zeros(num_vars)
        beta[0] = y.mean()

    # Regress log moment-based dispersions on the dispersion design
    mu = np.maximum(np.exp(design_matrix @ beta + offset), min_mu)
    rough_disp = ((counts - mu) ** 2 - mu) / mu**2
    reg = LinearRegression(fit_intercept=False)
    reg.fit(
        disp_design_matrix,
        np.log(np.clip(rough_disp, 1e-2, max_disp)),
        sample_weight=weights,
    )
    return beta, reg.coef_


def _failed_fit(num_vars: int, num_disp_vars: int) -> FeatureFit:
    num_coefs = num_vars + num_disp_vars
    return FeatureFit(
        beta=np.full(num_vars, np.nan),
        gamma=np.full(num_disp_vars, np.nan),
        zi_prop=0.0,
        information=np.full((num_coefs, num_coefs), np.nan),
        converged=False,
        n_iter=0,
        singular=True,
        log_lik=np.nan,
        zi_stat=np.nan,
        zi_pvalue=np.nan,
    )


def fit_md_glm(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray | None = None,
    weights: np.ndarray | None = None,
    init: tuple[np.ndarray, np.ndarray] | None = None,
    min_mu: float = 0.5,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
    beta_tol: float = 1e-8,
    maxiter: int = 250,
    max_beta: float = 30,
    optimizer: Literal["SLSQP", "trust-constr"] = "SLSQP",
) -> FeatureFit:
    r"""Fit a negative binomial mean-dispersion GLM to the counts of one feature.

    Means and dispersions are modelled with log links,
    :math:`\mu = \exp(X\beta + o)` and :math:`\alpha = \exp(Z\gamma)`, and both sets
    of coefficients are updated jointly at each iteration: the mean coefficients by
    iteratively reweighted least squares on the working response, the dispersion
    coefficients by a scoring step with the dispersion information. Steps that
    decrease the log-likelihood are halved.

    Scoring is considered to diverge when a mean coefficient exceeds ``max_beta``
    or when the dispersion linear predictor leaves
    :math:`[\log \alpha_{min}, \log \alpha_{max}]`, e.g. for a group of zero counts
    whose dispersion likelihood keeps increasing. The likelihood is then maximized
    under these constraints, and fits whose dispersions end up on a bound are
    flagged with ``disp_bounded``.

    Parameters
    ----------
    counts : ndarray
        Counts for a given feature. NaN entries are excluded from the likelihood.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    offset : ndarray, optional
        Log-scale offsets added to the mean linear predictor. (default: ``None``).

    weights : ndarray, optional
        Observation weights in [0, 1]. (default: ``None``).

    init : tuple, optional
        Starting values ``(beta, gamma)``. If ``None``, least-squares estimates are
        used. (default: ``None``).

    min_mu : float
        Lower bound on means used in the likelihood, for numerical stability.
        (default: ``0.5``).

    min_disp : float
        Lower bound on dispersions. (default: ``1e-8``).

    max_disp : float
        Upper bound on dispersions. (default: ``10``).

    beta_tol : float
        Stopping criterion:
        :math:`\vert \ell - \ell_{old}\vert / (\vert \ell \vert + 0.1) < \beta_{tol}`.
        (default: ``1e-8``).

    maxiter : int
        Maximum number of scoring iterations. (default: ``250``).

    max_beta : float
        Bound on the absolute value of mean coefficients. If scoring exceeds it,
        the joint likelihood is optimized with ``optimizer`` instead.
        (default: ``30``).

    optimizer : str
        Constrained optimizing method to use in case scoring starts diverging.
        Accepted values: 'SLSQP' or 'trust-constr'. (default: ``'SLSQP'``).

    Returns
    -------
    FeatureFit
        Fitted coefficients, information matrix and convergence diagnostics.
    """
    assert optimizer in ["SLSQP", "trust-constr"]

    num_samples = len(counts)
    num_vars = design_matrix.shape[1]
    num_disp_vars = disp_design_matrix.shape[1]

    if offset is None:
        offset = np.zeros(num_samples)
    if weights is None:
        weights = np.ones(num_samples)

    keep = ~np.isnan(counts)
    y = counts[keep]
    X = design_matrix[keep]
    Z = disp_design_matrix[keep]
    off = offset[keep]
    w = weights[keep]

    if len(y) == 0 or (y == 0).all():
        return _failed_fit(num_vars, num_disp_vars)

    if init is None:
        beta, gamma = _initial_estimates(y, X, Z, off, w, min_mu, max_disp)
    else:
        beta, gamma = (np.array(v, dtype=float) for v in init)

    ridge_factor = np.diag(np.repeat(1e-6, num_vars))
    disp_ridge_factor = np.diag(np.repeat(1e-6, num_disp_vars))

    def loglik(beta: np.ndarray, gamma: np.ndarray) -> float:
        mu_, alpha_ = _mean_disp(X, Z, off, beta, gamma, min_mu)
        return (w * nb_loglik(y, mu_, alpha_)).sum()

    ll = loglik(beta, gamma)
    converged = False
    i = 0
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        while i < maxiter:
            i += 1
            mu, alpha = _mean_disp(X, Z, off, beta, gamma, min_mu)

            # Mean block: weighted least squares on the working response
            W = w * mu / (1.0 + mu * alpha)
            z = np.log(mu) - off + (y - mu) / mu
            beta_hat = solve((X.T * W) @ X + ridge_factor, X.T @ (W * z), assume_a="pos")

            # Dispersion block: scoring step
            _, score_disp = md_score(y, mu, alpha)
            _, info_disp = md_information(y, mu, alpha)
            J = (Z.T * (w * info_disp)) @ Z
            if not _is_pos_def(J):
                # Fall back to the outer product of scores away from the optimum
                J = (Z.T * (w * score_disp**2)) @ Z
            gamma_hat = gamma + solve(J + disp_ridge_factor, Z.T @ (w * score_disp))

            if (
                (np.abs(beta_hat) > max_beta).any()
                or not np.isfinite(beta_hat).all()
                or _out_of_bounds(Z, gamma_hat, min_disp, max_disp)
            ):
                # If scoring starts diverging, optimize the constrained likelihood
                beta, gamma, converged, n_opt = _optimize_md_glm(
                    y,
                    X,
                    Z,
                    off,
                    w,
                    beta,
                    gamma,
                    min_mu=min_mu,
                    min_disp=min_disp,
                    max_disp=max_disp,
                    max_beta=max_beta,
                    maxiter=maxiter,
                    optimizer=optimizer,
                )
                i += n_opt
                ll = loglik(beta, gamma)
                break

            step = 1.0
            for _ in range(12):
                beta_new = beta + step * (beta_hat - beta)
                gamma_new = gamma + step * (gamma_hat - gamma)
                ll_new = loglik(beta_new, gamma_new)
                if np.isfinite(ll_new) and ll_new >= ll - 1e-10 * (np.abs(ll) + 0.1):
                    break
                step /= 2
            else:
                # No step increases the likelihood
                break

            dev_ratio = np.abs(ll_new - ll) / (np.abs(ll_new) + 0.1)
            beta, gamma, ll = beta_new, gamma_new, ll_new
            if dev_ratio < beta_tol:
                converged = True
                break

        mu, alpha = _mean_disp(X, Z, off, beta, gamma, min_mu)
        info_mean, info_disp = md_information(y, mu, alpha)
        information = md_information_matrix(X, Z, w * info_mean, w * info_disp)

    return FeatureFit(
        beta=beta,
        gamma=gamma,
        zi_prop=0.0,
        information=information,
        converged=bool(converged),
        n_iter=i,
        singular=is_singular(information),
        log_lik=float(ll),
        zi_stat=np.nan,
        zi_pvalue=np.nan,
        disp_bounded=_on_bounds(Z, gamma, min_disp, max_disp),
    )


def _optimize_md_glm(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray,
    weights: np.ndarray,
    beta_init: np.ndarray,
    gamma_init: np.ndarray,
    min_mu: float,
    min_disp: float,
    max_disp: float,
    max_beta: float,
    maxiter: int,
    optimizer: str,
) -> tuple[np.ndarray, np.ndarray, bool, int]:
    """Maximize the joint likelihood, with bounded mean coefficients and
    dispersions.
    """
    num_vars = design_matrix.shape[1]

    def f(theta: np.ndarray) -> float:
        # closure to minimize
        mu_, alpha_ = _mean_disp(
            design_matrix,
            disp_design_matrix,
            offset,
            theta[:num_vars],
            theta[num_vars:],
            min_mu,
        )
        return nb_nll(counts, mu_, alpha_, weights)

    def df(theta: np.ndarray) -> np.ndarray:
        eta = design_matrix @ theta[:num_vars] + offset
        mu_, alpha_ = _mean_disp(
            design_matrix,
            disp_design_matrix,
            offset,
            theta[:num_vars],
            theta[num_vars:],
            min_mu,
        )
        score_mean, score_disp = md_score(counts, mu_, alpha_)
        # Floored means do not depend on the mean coefficients
        score_mean = np.where(np.exp(eta) > min_mu, score_mean, 0.0)
        return -np.concatenate(
            [
                design_matrix.T @ (weights * score_mean),
                disp_design_matrix.T @ (weights * score_disp),
            ]
        )

    # One constraint per distinct row of the dispersion design
    disp_rows = np.unique(disp_design_matrix, axis=0)
    disp_constraint = LinearConstraint(
        np.hstack([np.zeros((len(disp_rows), num_vars)), disp_rows]),
        np.log(min_disp),
        np.log(max_disp),
    )

    theta_init = np.concatenate(
        [
            np.clip(np.nan_to_num(beta_init), -max_beta, max_beta),
            np.nan_to_num(gamma_init),
        ]
    )
    res = minimize(
        f,
        theta_init,
        jac=df,
        method=optimizer,
        bounds=[(-max_beta, max_beta)] * num_vars
        + [(None, None)] * disp_design_matrix.shape[1],
        constraints=[disp_constraint],
        options={"maxiter": maxiter},
    )
    return res.x[:num_vars], res.x[num_vars:], bool(res.success), int(res.nit)


def zi_loglik(
    counts: np.ndarray, mu: np.ndarray, alpha: np.ndarray, zi_prop: float
) -> float:
    """Log-likelihood of a zero-inflated negative binomial sample.

    Parameters
    ----------
    counts : ndarray
        Observations. NaN entries are ignored.

    mu : ndarray
        Means of the negative binomial component.

    alpha : ndarray
        Dispersions of the negative binomial component.

    zi_prop : float
        Mixture weight of the point mass at zero.

    Returns
    -------
    float
        Log-likelihood of the observations.
    """
    keep = ~np.isnan(counts)
    y, mu, alpha = counts[keep], mu[keep], alpha[keep]
    ll = nb_loglik(y, mu, alpha)
    zeros = y == 0
    with np.errstate(divide="ignore"):
        return (
            np.log(zi_prop + (1 - zi_prop) * np.exp(ll[zeros])).sum()
            + (np.log1p(-zi_prop) + ll[~zeros]).sum()
        )


def zi_md_information(
    counts: np.ndarray, mu: np.ndarray, alpha: np.ndarray, zi_prop: float
) -> tuple[np.ndarray, ...]:
    r"""Per-observation information weights of the zero-inflated negative binomial.

    Weights are derivatives of the mixture log-likelihood :func:`zi_loglik`, with
    respect to the linear predictors :math:`\eta_\mu`, :math:`\eta_\alpha` and to
    the zero proportion :math:`s`. As for :func:`md_information`, the dispersion
    weight is observed information and all other weights are expected information,
    i.e. averaged over the zero-inflated distribution. With
    :math:`p_0 = (1 + \alpha\mu)^{-1/\alpha}` and
    :math:`q = s / (s + (1 - s) p_0)`, the expected mean weight is

    .. math::
        (1 - s) \left(\frac{\mu}{1 + \alpha\mu}
        - q p_0 \frac{\mu^2}{(1 + \alpha\mu)^2} \right),

    which reduces to the negative binomial weight when :math:`s = 0`.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Means of the negative binomial component.

    alpha : ndarray
        Dispersions of the negative binomial component.

    zi_prop : float
        Mixture weight of the point mass at zero.

    Returns
    -------
    info_mean : ndarray
        Mean weights (expected).

    info_cross : ndarray
        Mean-dispersion weights (expected).

    info_disp : ndarray
        Dispersion weights (observed).

    info_zi_mean : ndarray
        Zero proportion-mean weights (expected).

    info_zi_disp : ndarray
        Zero proportion-dispersion weights (expected).

    info_zi : ndarray
        Zero proportion weights (expected).
    """
    counts, mu, alpha = np.broadcast_arrays(
        np.asarray(counts, dtype=float), mu, alpha
    )
    zeros = counts == 0
    amu = alpha * mu
    nb_zero = np.exp(-np.log1p(amu) / alpha)
    mix_zero = zi_prop + (1 - zi_prop) * nb_zero
    structural = zi_prop / mix_zero

    # Negative binomial scores of a zero count
    score_mean0 = -mu / (1 + amu)
    score_disp0 = np.log1p(amu) / alpha + score_mean0

    info_mean = (1 - zi_prop) * (
        mu / (1 + amu) - structural * nb_zero * score_mean0**2
    )
    info_cross = -(1 - zi_prop) * structural * nb_zero * score_mean0 * score_disp0
    _, nb_info_disp = md_information(counts, mu, alpha)
    info_disp = np.where(
        zeros,
        (1 - structural) * (nb_info_disp - structural * score_disp0**2),
        nb_info_disp,
    )
    info_zi_mean = nb_zero * score_mean0 / mix_zero
    info_zi_disp = nb_zero * score_disp0 / mix_zero
    info_zi = (1 - nb_zero) ** 2 / mix_zero + (1 - nb_zero) / (1 - zi_prop)
    return info_mean, info_cross, info_disp, info_zi_mean, info_zi_disp, info_zi


def zi_md_information_matrix(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    mu: np.ndarray,
    alpha: np.ndarray,
    zi_prop: float,
) -> np.ndarray:
    """Information matrix of the coefficients of a zero-inflated fit.

    The zero proportion is profiled out: the returned matrix is the Schur complement
    of its information in the joint information of ``(beta, gamma, s)``, so that its
    inverse is the covariance of the coefficients when ``s`` is estimated.

    Parameters
    ----------
    counts : ndarray
        Counts for a given feature. NaN entries are ignored.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    mu : ndarray
        Means of the negative binomial component.

    alpha : ndarray
        Dispersions of the negative binomial component.

    zi_prop : float
        Mixture weight of the point mass at zero.

    Returns
    -------
    ndarray
        Square information matrix of the stacked coefficients.
    """
    keep = ~np.isnan(counts)
    X = design_matrix[keep]
    Z = disp_design_matrix[keep]
    (
        info_mean,
        info_cross,
        info_disp,
        info_zi_mean,
        info_zi_disp,
        info_zi,
    ) = zi_md_information(counts[keep], mu[keep], alpha[keep], zi_prop)

    information = md_information_matrix(X, Z, info_mean, info_disp, info_cross)
    zi_column = np.concatenate([X.T @ info_zi_mean, Z.T @ info_zi_disp])
    return information - np.outer(zi_column, zi_column) / info_zi.sum()


def zero_inflation_test(zi_log_lik: float, log_lik: float) -> tuple[float, float]:
    """Likelihood ratio test of zero inflation.

    As a zero proportion of zero lies on the boundary of the parameter space, the
    null distribution is a 50:50 mixture of a point mass at zero and a chi-square
    with one degree of freedom.

    Parameters
    ----------
    zi_log_lik : float
        Log-likelihood of the zero-inflated model.

    log_lik : float
        Log-likelihood of the model without zero inflation.

    Returns
    -------
    stat : float
        Likelihood ratio statistic.

    pvalue : float
        P-value of the test.
    """
    if not (np.isfinite(zi_log_lik) and np.isfinite(log_lik)):
        return np.nan, np.nan
    stat = max(2 * (zi_log_lik - log_lik), 0.0)
    if stat <= 0:
        return 0.0, 1.0
    return stat, 0.5 * chi2.sf(stat, 1)


def fit_zi_md_glm(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray | None = None,
    min_mu: float = 0.5,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
    beta_tol: float = 1e-8,
    maxiter: int = 250,
    zi_maxiter: int = 200,
    max_beta: float = 30,
    optimizer: Literal["SLSQP", "trust-constr"] = "SLSQP",
) -> FeatureFit:
    """Fit a zero-inflated negative binomial mean-dispersion GLM by EM.

    The E-step computes, for each zero count, the posterior probability that it
    arose from the point mass at zero. The M-step sets the zero proportion to the
    mean posterior and refits the mean-dispersion GLM with zeros down-weighted by
    one minus their posterior. The zero-inflated fit is then compared to the plain
    fit with a boundary likelihood ratio test.

    Parameters
    ----------
    counts : ndarray
        Counts for a given feature. NaN entries are excluded from the likelihood.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    offset : ndarray, optional
        Log-scale offsets added to the mean linear predictor. (default: ``None``).

    min_mu : float
        Lower bound on means. (default: ``0.5``).

    min_disp : float
        Lower bound on dispersions. (default: ``1e-8``).

    max_disp : float
        Upper bound on dispersions. (default: ``10``).

    beta_tol : float
        Relative log-likelihood tolerance, for both the EM loop and the inner
        scoring iterations. (default: ``1e-8``).

    maxiter : int
        Maximum number of scoring iterations per M-step. (default: ``250``).

    zi_maxiter : int
        Maximum number of EM iterations. (default: ``200``).

    max_beta : float
        Bound on the absolute value of mean coefficients. (default: ``30``).

    optimizer : str
        Constrained optimizer in case scoring diverges. (default: ``'SLSQP'``).

    Returns
    -------
    FeatureFit
        Fit of the zero-inflated model, including the zero-inflation test.
    """
    num_samples = len(counts)
    if offset is None:
        offset = np.zeros(num_samples)

    glm_kwargs = dict(
        min_mu=min_mu,
        min_disp=min_disp,
        max_disp=max_disp,
        beta_tol=beta_tol,
        maxiter=maxiter,
        max_beta=max_beta,
        optimizer=optimizer,
    )
    plain_fit = fit_md_glm(
        counts, design_matrix, disp_design_matrix, offset=offset, **glm_kwargs
    )

    keep = ~np.isnan(counts)
    zeros = counts == 0
    if not zeros.any():
        return plain_fit._replace(zi_stat=0.0, zi_pvalue=1.0)
    if not np.isfinite(plain_fit.log_lik):
        return plain_fit

    zi_prop = 0.5 * zeros.sum() / keep.sum()
    fit = plain_fit
    ll = -np.inf
    converged = False
    n_iter = 0
    with np.errstate(divide="ignore", invalid="ignore"):
        while n_iter < zi_maxiter:
            n_iter += 1
            mu, alpha = _mean_disp(
                design_matrix, disp_design_matrix, offset, fit.beta, fit.gamma, min_mu
            )

            # E-step: posterior probability of zeros being structural
            nb_zero = np.exp(nb_loglik(np.zeros(num_samples), mu, alpha))
            posterior = np.where(
                zeros, zi_prop / (zi_prop + (1 - zi_prop) * nb_zero), 0.0
            )

            # M-step
            zi_prop = float(posterior[keep].mean())
            fit = fit_md_glm(
                counts,
                design_matrix,
                disp_design_matrix,
                offset=offset,
                weights=1 - posterior,
                init=(fit.beta, fit.gamma),
                **glm_kwargs,
            )
            if not np.isfinite(fit.log_lik):
                break

            mu, alpha = _mean_disp(
                design_matrix, disp_design_matrix, offset, fit.beta, fit.gamma, min_mu
            )
            ll_new = zi_loglik(counts, mu, alpha, zi_prop)
            dev_ratio = np.abs(ll_new - ll) / (np.abs(ll_new) + 0.1)
            ll = ll_new
            if dev_ratio < beta_tol:
                converged = True
                break

    information = fit.information
    if np.isfinite(fit.beta).all() and np.isfinite(fit.gamma).all():
        # Information of the mixture likelihood, rather than that of the last
        # weighted M-step
        mu, alpha = _mean_disp(
            design_matrix, disp_design_matrix, offset, fit.beta, fit.gamma, min_mu
        )
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            information = zi_md_information_matrix(
                counts, design_matrix, disp_design_matrix, mu, alpha, zi_prop
            )

    zi_stat, zi_pvalue = zero_inflation_test(ll, plain_fit.log_lik)
    return fit._replace(
        information=information,
        singular=is_singular(information),
        zi_prop=float(np.clip(zi_prop, 0.0, 1.0)),
        converged=converged and fit.converged,
        n_iter=n_iter,
        log_lik=float(ll),
        zi_stat=zi_stat,
        zi_pvalue=zi_pvalue,
    )


def fit_feature(
    strategy: FitStrategy,
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray | None = None,
    zi_maxiter: int = 200,
    **kwargs,
) -> FeatureFit:
    """Fit one feature with the requested strategy.

    Parameters
    ----------
    strategy : FitStrategy
        ``FitStrategy.PLAIN`` or ``FitStrategy.ZERO_INFLATED``.

    counts : ndarray
        Counts for a given feature.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    offset : ndarray, optional
        Log-scale offsets of the mean model. (default: ``None``).

    zi_maxiter : int
        Maximum number of EM iterations, for zero-inflated fits. (default: ``200``).

    **kwargs
        Keyword arguments passed to :func:`fit_md_glm`.

    Returns
    -------
    FeatureFit
        Fitted model.
    """
    if strategy == FitStrategy.ZERO_INFLATED:
        return fit_zi_md_glm(
            counts,
            design_matrix,
            disp_design_matrix,
            offset=offset,
            zi_maxiter=zi_maxiter,
            **kwargs,
        )
    return fit_md_glm(counts, design_matrix, disp_design_matrix, offset=offset, **kwargs)


def influence_distances(
    fit: FeatureFit,
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray | None = None,
    min_mu: float = 0.5,
) -> np.ndarray:
    r"""Approximate leave-one-out influence of each observation on a fit.

    Removing observation :math:`i` changes the score by :math:`-u_i`, so that one
    Newton step from the fitted coefficients moves them by
    :math:`\Delta_i = -I^{-1} u_i`. The influence statistic is the generalized
    Cook's distance :math:`D_i = \Delta_i^t I \Delta_i / k`, where :math:`k` is the
    number of coefficients.

    Parameters
    ----------
    fit : FeatureFit
        Fitted model.

    counts : ndarray
        Counts the model was fitted on.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    offset : ndarray, optional
        Log-scale offsets of the mean model. (default: ``None``).

    min_mu : float
        Lower bound on means. (default: ``0.5``).

    Returns
    -------
    ndarray
        Influence of each observation. NaN for missing observations, or everywhere
        if the fit is singular.
    """
    num_samples = len(counts)
    distances = np.full(num_samples, np.nan)
    if fit.singular:
        return distances
    if offset is None:
        offset = np.zeros(num_samples)

    keep = ~np.isnan(counts)
    mu, alpha = _mean_disp(
        design_matrix, disp_design_matrix, offset, fit.beta, fit.gamma, min_mu
    )
    score_mean, score_disp = md_score(counts[keep], mu[keep], alpha[keep])
    scores = np.hstack(
        [
            design_matrix[keep] * score_mean[:, None],
            disp_design_matrix[keep] * score_disp[:, None],
        ]
    )
    # One Newton step per observation
    deltas = solve(fit.information, scores.T).T
    distances[keep] = np.einsum("ij,jk,ik->i", deltas, fit.information, deltas)
    distances /= fit.information.shape[0]
    return distances


def outlier_cutoff(
    distances: np.ndarray,
    num_params: int,
    num_samples: int,
    policy: Literal["f", "chisq", "empirical"] = "f",
    quantile: float = 0.99,
) -> float:
    """Influence cutoff above which observations are flagged as outliers.

    Parameters
    ----------
    distances : ndarray
        Influence statistics of the observations of a feature.

    num_params : int
        Number of fitted coefficients.

    num_samples : int
        Number of (non-missing) observations.

    policy : str
        ``"f"``: quantile of an F(k, n - k) distribution, as for Cook's distances.
        ``"chisq"``: quantile of a chi-square with k degrees of freedom, divided by k.
        ``"empirical"``: Tukey far-out fence (Q3 + 3 IQR) of the distances.
        (default: ``"f"``).

    quantile : float
        Quantile used by the ``"f"`` and ``"chisq"`` policies. (default: ``0.99``).

    Returns
    -------
    float
        Cutoff.
    """
    if policy == "f":
        if num_samples <= num_params:
            return np.inf
        return f.ppf(quantile, num_params, num_samples - num_params)
    elif policy == "chisq":
        return chi2.ppf(quantile, num_params) / num_params
    elif policy == "empirical":
        if np.isnan(distances).all():
            return np.inf
        q1, q3 = np.nanquantile(distances, [0.25, 0.75])
        return q3 + 3 * (q3 - q1)
    else:
        raise ValueError(
            f"Unknown outlier cutoff policy '{policy}'. Expected 'f', 'chisq' or "
            "'empirical'."
        )


def detect_outliers(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp_design_matrix: np.ndarray,
    offset: np.ndarray | None = None,
    strategy: FitStrategy = FitStrategy.PLAIN,
    cutoff_policy: Literal["f", "chisq", "empirical"] = "f",
    cutoff_quantile: float = 0.99,
    max_outlier_fraction: float = 0.2,
    detection_maxiter: int = 50,
    zi_maxiter: int = 200,
    **kwargs,
) -> OutlierReport:
    """Flag and remove influential observations of a feature, then refit.

    The model is first fitted without zero inflation and with a reduced iteration
    budget. Observations whose influence exceeds the cutoff are replaced with NaN,
    keeping at most the ``max_outlier_fraction`` most influential ones, and the
    model is refitted once on the cleaned counts with the requested strategy.

    Parameters
    ----------
    counts : ndarray
        Counts for a given feature.

    design_matrix : ndarray
        Mean design matrix.

    disp_design_matrix : ndarray
        Dispersion design matrix.

    offset : ndarray, optional
        Log-scale offsets of the mean model. (default: ``None``).

    strategy : FitStrategy
        Strategy of the final fit. (default: ``FitStrategy.PLAIN``).

    cutoff_policy : str
        Influence cutoff policy, see :func:`outlier_cutoff`. (default: ``"f"``).

    cutoff_quantile : float
        Quantile used by the cutoff policy. (default: ``0.99``).

    max_outlier_fraction : float
        Maximum fraction of observations that may be flagged. (default: ``0.2``).

    detection_maxiter : int
        Maximum number of scoring iterations of the detection fit.
        (default: ``50``).

    zi_maxiter : int
        Maximum number of EM iterations of the final fit, if zero-inflated.
        (default: ``200``).

    **kwargs
        Keyword arguments passed to :func:`fit_md_glm`.

    Returns
    -------
    OutlierReport
        Status, flagged observations, cleaned counts and final fit.
    """
    counts = np.asarray(counts, dtype=float)
    num_params = design_matrix.shape[1] + disp_design_matrix.shape[1]
    num_obs = int((~np.isnan(counts)).sum())

    detection_kwargs = {
        **kwargs,
        "maxiter": min(detection_maxiter, kwargs.get("maxiter", 250)),
    }
    detection_fit = fit_md_glm(
        counts, design_matrix, disp_design_matrix, offset=offset, **detection_kwargs
    )
    distances = influence_distances(
        detection_fit,
        counts,
        design_matrix,
        disp_design_matrix,
        offset=offset,
        min_mu=kwargs.get("min_mu", 0.5),
    )

    detection_failed = bool(np.isnan(distances).all())
    if detection_failed:
        cutoff = np.nan
        outlier_idx = np.array([], dtype=int)
    else:
        cutoff = outlier_cutoff(
            distances, num_params, num_obs, cutoff_policy, cutoff_quantile
        )
        with np.errstate(invalid="ignore"):
            candidates = np.where(distances > cutoff)[0]
        max_outliers = floor(max_outlier_fraction * num_obs)
        if len(candidates) > max_outliers:
            # Only keep the most influential observations
            order = np.argsort(distances[candidates])[::-1]
            candidates = candidates[order[:max_outliers]]
        outlier_idx = np.sort(candidates)

    cleaned_counts = counts.copy()
    cleaned_counts[outlier_idx] = np.nan

    fit = fit_feature(
        strategy,
        cleaned_counts,
        design_matrix,
        disp_design_matrix,
        offset=offset,
        zi_maxiter=zi_maxiter,
        **kwargs,
    )

    if detection_failed:
        status = 3
    elif fit.singular:
        status = 2
    elif not fit.converged:
        status = 1
    else:
        status = 0

    return OutlierReport(
        status=status,
        n_outliers=len(outlier_idx),
        outlier_idx=outlier_idx,
        cleaned_counts=cleaned_counts,
        influence=distances,
        cutoff=float(cutoff),
        fit=fit,
    )


def _wald_statistic(estimate: float, variance: float, threshold: float) -> float:
    # Squared distance of the estimate to the [-threshold, threshold] interval,
    # in units of standard error.
    return max(np.abs(estimate) - threshold, 0.0) ** 2 / variance


def wald_test(
    coefs: np.ndarray,
    information: np.ndarray,
    contrast: np.ndarray,
    lfc_threshold: float = 0.0,
    singular: bool = False,
) -> tuple[float, float, float, float, float, float]:
    r"""Run classical and threshold Wald tests for a contrast of fitted coefficients.

    The classical test assesses :math:`H_0: c^t\theta = 0` with the statistic
    :math:`(c^t\theta)^2 / c^t \Sigma c`, where :math:`\Sigma` is the inverse
    information, referred to a chi-square with one degree of freedom.

    The threshold test assesses :math:`H_0: \vert c^t\theta \vert \leq \tau`. By the
    union-intersection principle, it combines the one-sided tests of
    :math:`c^t\theta > \tau` and :math:`c^t\theta < -\tau`: its p-value is twice the
    smallest one-sided normal p-value (capped at one), i.e. the chi-square p-value
    of :math:`\max(\vert c^t\theta \vert - \tau, 0)^2 / c^t \Sigma c`. It reduces to
    the classical test when :math:`\tau = 0`.

    Parameters
    ----------
    coefs : ndarray
        Stacked fitted coefficients.

    information : ndarray
        Information matrix of the coefficients.

    contrast : ndarray
        Contrast vector, of the same length as ``coefs``.

    lfc_threshold : float
        Threshold :math:`\tau` on the absolute effect, in natural log scale.
        (default: ``0``).

    singular : bool
        Whether the information matrix is singular. If so, statistics and p-values
        are NaN. (default: ``False``).

    Returns
    -------
    estimate : float
        Contrast estimate :math:`c^t\theta`, in natural log scale.

    se : float
        Standard error of the estimate.

    stat : float
        Classical Wald statistic.

    pvalue : float
        Classical Wald p-value.

    thr_stat : float
        Threshold Wald statistic.

    thr_pvalue : float
        Threshold Wald p-value.
    """
    estimate = float(contrast @ coefs)
    if singular or not np.isfinite(estimate):
        return estimate, np.nan, np.nan, np.nan, np.nan, np.nan

    variance = float(contrast @ np.linalg.inv(information) @ contrast)
    if not variance > 0:
        return estimate, np.nan, np.nan, np.nan, np.nan, np.nan

    stat = _wald_statistic(estimate, variance, 0.0)
    thr_stat = _wald_statistic(estimate, variance, lfc_threshold)
    return (
        estimate,
        np.sqrt(variance),
        stat,
        chi2.sf(stat, 1),
        thr_stat,
        chi2.sf(thr_stat, 1),
    )


def p_adjust(pvals: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Adjust p-values for multiple testing, ignoring NaNs.

    Parameters
    ----------
    pvals : ndarray
        Raw p-values. NaN entries are left untouched.

    method : str
        Any method accepted by ``statsmodels.stats.multitest.multipletests``.
        (default: ``"fdr_bh"``, Benjamini-Hochberg).

    Returns
    -------
    ndarray
        Adjusted p-values.
    """
    pvals = np.asarray(pvals, dtype=float)
    padj = np.full(pvals.shape, np.nan)
    tested = ~np.isnan(pvals)
    if tested.any():
        padj[tested] = multipletests(pvals[tested], method=method)[1]
    return padj


def get_num_processes(n_cpus: int | None) -> int:
    """Return the number of processes to use for multiprocessing.

    Returns the maximum number of available cpus by default.

    Parameters
    ----------
    n_cpus : int, optional
        Desired number of cpus. If ``None``, will return the number of available cpus.
        (default: ``None``).

    Returns
    -------
    int
        Number of processes to spawn.
    """
    if n_cpus is None:
        try:
            n_processes = multiprocessing.cpu_count()
        except NotImplementedError:
            n_processes = 5  # arbitrary default
    else:
        n_processes = n_cpus

    return n_processes
