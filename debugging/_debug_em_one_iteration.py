import numpy as np

import sys
import os
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gmm_em import EMConfig, MixtureParams, check_inputs, em_step, initial_state


def pretty(name, arr):
    print(f"\n{name}:")
    print(arr)
    print(f"shape={tuple(arr.shape)}, dtype={arr.dtype}")


def main():
    np.set_printoptions(precision=6, suppress=True)
    torch.set_printoptions(precision=6, sci_mode=False)

    # -----------------------------
    # 1) Hard-coded tiny dataset (2D)
    # -----------------------------
    X = np.array([
        [-2.0, -1.0],
        [-1.0, -2.0],
        [-2.0, -2.0],
        [ 2.0,  1.0],
        [ 1.0,  2.0],
        [ 2.0,  2.0],
    ], dtype=np.float64)

    # -----------------------------
    # 2) Hard-coded starting params
    # -----------------------------
    init = MixtureParams.from_arrays(
        weights=np.array([0.5, 0.5]),
        means=np.array([
            [-1.5, -1.5],
            [ 1.5,  1.5],
        ]),
        covariances=np.array([
            [[1.0, 0.0],
             [0.0, 1.0]],
            [[1.0, 0.0],
             [0.0, 1.0]],
        ]),
    )
    config = EMConfig(reg_covar=1e-6)
    X, params = check_inputs(X, init, config)

    pretty("X", X)
    pretty("weights (pi)", params.weights)
    pretty("means (mu)", params.means)
    pretty("covariances (Sigma)", params.covariances)

    # -----------------------------
    # 3) E-step on the guess
    # -----------------------------
    state = initial_state(X, params)
    pretty("resp (E-step on initial guess)", state.resp)
    print(f"log-likelihood: {state.log_likelihood:.6f}")

    # -----------------------------
    # 4) One iteration: M-step, then E-step
    # -----------------------------
    state = em_step(state, X, config)
    pretty("weights after M-step", state.params.weights)
    pretty("means after M-step", state.params.means)
    pretty("covariances after M-step", state.params.covariances)
    pretty("resp under new parameters", state.resp)
    pretty("per-component weighted log-density", state.component_log_likelihood)
    print(f"log-likelihood: {state.log_likelihood:.6f}  change: {state.change:.3e}")


if __name__ == "__main__":
    main()
