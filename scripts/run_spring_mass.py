from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt
import torch
import yaml

from sapcore.diagnostics import flatten_diagnostics, model_diagnostics, to_jsonable
from sapcore.model import SapModel
from sapcore.systems.spring_mass import SpringMassConfig, make_spring_mass_problem
from sapcore.utils.determinism import set_determinism

logger = logging.getLogger("run_spring_mass")


@dataclass(frozen=True)
class LineConfig:
    direction: tuple[float, ...] = (0.0, 0.0, 1.0)
    s_min: float = -1.0
    s_max: float = 1.0
    samples: int = 101

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> LineConfig:
        defaults = LineConfig()
        return LineConfig(
            direction=tuple(float(x) for x in raw.get("direction", defaults.direction)),
            s_min=float(raw.get("s_min", defaults.s_min)),
            s_max=float(raw.get("s_max", defaults.s_max)),
            samples=int(raw.get("samples", defaults.samples)),
        )


def _torch_dtype(name: str) -> torch.dtype:
    if name == "float32":
        return torch.float32
    if name == "float64":
        return torch.float64
    raise ValueError(f"Unsupported dtype: {name}")


def _default_out_dir(config_path: Path) -> Path:
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    return Path("outputs") / f"{timestamp}-{config_path.stem}"


def _write_jsonl(path: Path, rows: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as file:
        for row in rows:
            file.write(json.dumps(row, ensure_ascii=False) + "\n")


def _vector_from_param(value: Any, *, dtype: torch.dtype) -> torch.Tensor:
    if value is None:
        return torch.zeros((6,), dtype=dtype)
    if isinstance(value, (list, tuple)) and len(value) == 6:
        return torch.tensor([float(x) for x in value], dtype=dtype)
    raise TypeError(f"Expected a list of 6 numbers, got {value!r}")


def _plot_line_search(out_dir: Path, series: dict[str, list[float]]) -> None:
    plots_dir = out_dir / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    fig, (ax_cost, ax_slope) = plt.subplots(2, 1, figsize=(8, 6), sharex=True)
    ax_cost.plot(series["s"], series["cost"], label="cost")
    ax_cost.plot(series["s"], series["momentum_cost"], label="momentum cost")
    ax_cost.legend()
    ax_cost.set_title("Cost along v(s) = v* + s⋅d")
    ax_slope.plot(series["s"], series["slope"], label="∇ℓ⋅d")
    ax_slope.plot(series["s"], series["curvature"], label="dᵀ⋅H⋅d")
    ax_slope.set_xlabel("s")
    ax_slope.legend()
    fig.tight_layout()
    fig.savefig(plots_dir / "line_search.png")
    plt.close(fig)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", type=Path, required=True)
    parser.add_argument("--out-dir", type=Path, default=None)
    parser.add_argument("--deterministic", action="store_true", default=False)
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="[%(asctime)s][%(name)s][%(levelname)s]: %(message)s")

    config = yaml.safe_load(args.config.read_text(encoding="utf-8"))
    seed = int(config.get("seed", 0))
    dtype = _torch_dtype(str(config.get("dtype", "float64")))
    set_determinism(seed=seed, deterministic=args.deterministic, dtype=dtype)

    system_cfg = SpringMassConfig(**dict(config.get("system", {})))
    q0 = _vector_from_param(config.get("q0"), dtype=dtype)
    v0 = _vector_from_param(config.get("v0"), dtype=dtype)
    problem = make_spring_mass_problem(system_cfg, q0, v0, dtype=dtype)
    model = SapModel(problem)
    logger.info(
        "Model has %d of %d velocities and %d constraint equations",
        model.num_velocities(),
        problem.num_velocities(),
        model.num_constraint_equations(),
    )

    line_cfg = LineConfig.from_dict(dict(config.get("line", {})))
    direction = torch.tensor(line_cfg.direction, dtype=dtype)
    if tuple(direction.shape) != (model.num_velocities(),):
        raise ValueError(f"line.direction must have {model.num_velocities()} entries")
    s_values = torch.linspace(line_cfg.s_min, line_cfg.s_max, line_cfg.samples, dtype=dtype)

    state = model.make_state()
    rows: list[dict[str, Any]] = []
    series: dict[str, list[float]] = {"s": [], "cost": [], "momentum_cost": [], "slope": [], "curvature": []}
    for s in s_values:
        model.set_velocities(state, model.v_star() + s * direction)
        diag = model_diagnostics(model, state)
        slope = torch.dot(model.eval_cost_gradient(state), direction)
        curvature = torch.dot(direction, model.multiply_by_hessian(state, direction))

        row = {"s": float(s.item()), **flatten_diagnostics(diag)}
        row["line.slope"] = to_jsonable(slope)
        row["line.curvature"] = to_jsonable(curvature)
        rows.append(row)

        series["s"].append(float(s.item()))
        series["cost"].append(row["cost.total"])
        series["momentum_cost"].append(row["cost.momentum"])
        series["slope"].append(row["line.slope"])
        series["curvature"].append(row["line.curvature"])

    out_dir = args.out_dir or _default_out_dir(args.config)
    out_dir.mkdir(parents=True, exist_ok=True)
    _write_jsonl(out_dir / "line_search.jsonl", rows)
    i_min = min(range(len(rows)), key=lambda i: series["cost"][i])
    summary = {
        "config": str(args.config),
        "sizes": to_jsonable(model_diagnostics(model, state)["sizes"]),
        "min_cost": series["cost"][i_min],
        "argmin_s": series["s"][i_min],
    }
    (out_dir / "summary.json").write_text(json.dumps(summary, indent=2), encoding="utf-8")
    _plot_line_search(out_dir, series)
    print(f"Wrote outputs to: {out_dir}")


if __name__ == "__main__":
    main()
