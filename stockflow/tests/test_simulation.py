"""
Tests for the simulation driver and time grid
"""

import pytest

from stockflow.constants import DIVERGENCE_MESSAGE
from stockflow.models import (
    Converter,
    Flow,
    Link,
    ModelDocument,
    Parameter,
    SimulationConfig,
    Stock,
)
from stockflow.simulation import (
    RunState,
    SimulationDriver,
    build_time_grid,
    run_simulation,
)
from stockflow.templates import get_template


def _decay_model(**config):
    """Single stock draining at 10% per time unit"""
    return ModelDocument(
        id="decay",
        parameters=[Parameter(id="k", value=0.1)],
        stocks=[Stock(id="s", initial_value="100", formula="-outflow")],
        flows=[Flow(id="outflow", formula="k * s", source_id="s")],
        links=[
            Link(id="l1", source="k", target="outflow"),
            Link(id="l2", source="s", target="outflow"),
            Link(id="l3", source="outflow", target="s"),
        ],
        simulation_config=SimulationConfig(**{"start": 0, "end": 10, "dt": 1, **config}),
    )


def _runaway_model(end=20):
    """Stock growing by a factor of 11 per tick"""
    return ModelDocument(
        stocks=[Stock(id="s", initial_value="1", formula="s * 10")],
        simulation_config=SimulationConfig(start=0, end=end, dt=1),
    )


# ============================================================================
# Time Grid
# ============================================================================


def test_time_grid_integer_steps():
    assert build_time_grid(0, 10, 1) == [float(t) for t in range(11)]


def test_time_grid_appends_end():
    """Test that a non-dividing dt still ends exactly on end"""
    assert build_time_grid(0, 10, 3) == [0.0, 3.0, 6.0, 9.0, 10.0]


def test_time_grid_snaps_last_point():
    grid = build_time_grid(0, 1, 0.1)
    assert len(grid) == 11
    assert grid[-1] == 1.0
    assert grid[3] == pytest.approx(0.3)


@pytest.mark.parametrize(
    "start,end,dt",
    [(0, 10, 1), (0, 1, 0.3), (0, 10, 3), (0, 1, 0.1), (5, 5, 1), (10, 0, 1), (0, 60, 0.5)],
)
def test_num_steps_matches_time_grid(start, end, dt):
    """Test that the tick count used for limits matches the grid"""
    config = SimulationConfig(start=start, end=end, dt=dt)
    assert config.get_num_steps() == len(build_time_grid(start, end, dt))


def test_time_grid_edge_cases():
    assert build_time_grid(5, 5, 1) == [5.0]
    assert build_time_grid(10, 0, 1) == []
    with pytest.raises(ValueError):
        build_time_grid(0, 10, 0)


# ============================================================================
# Driver
# ============================================================================


def test_exponential_decay():
    """Test that Euler decay matches 100 * 0.9^n"""
    output = run_simulation(_decay_model())

    assert output.is_stable
    assert output.error is None
    assert output.state == "completed"
    assert len(output.results) == 11
    assert output.results[0]["s"] == 100.0
    assert output.results[0]["outflow"] == 10.0
    assert output.results[-1]["s"] == pytest.approx(100 * 0.9 ** 10)


def test_snapshots_hold_every_identifier():
    output = run_simulation(_decay_model())

    for i, snapshot in enumerate(output.results):
        assert set(snapshot) == {"time", "k", "s", "outflow"}
        assert snapshot["time"] == float(i)
        assert snapshot["k"] == 0.1


def test_stocks_never_negative():
    model = ModelDocument(
        stocks=[Stock(id="s", initial_value="5", formula="-10")],
        simulation_config=SimulationConfig(start=0, end=5, dt=1),
    )
    output = run_simulation(model)

    assert [r["s"] for r in output.results] == [5.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def test_initial_values_are_seeded_as_evaluated():
    """Test initial formulas: parameters, earlier stocks, negative values"""
    model = ModelDocument(
        parameters=[Parameter(id="k", value=0.1)],
        stocks=[
            Stock(id="a", initial_value="k * 1000"),
            Stock(id="b", initial_value="a * 2"),
            Stock(id="c", initial_value="-5"),
            Stock(id="d", initial_value=""),
        ],
        simulation_config=SimulationConfig(start=0, end=0, dt=1),
    )
    first = run_simulation(model).results[0]

    assert first["a"] == 100.0
    assert first["b"] == 200.0
    assert first["c"] == -5.0
    assert first["d"] == 0.0


def test_negative_seed_integrates_from_raw_value():
    """Test that the floor applies to integrated values, not to the seed"""
    model = ModelDocument(
        stocks=[Stock(id="s", initial_value="-5", formula="1")],
        simulation_config=SimulationConfig(start=0, end=2, dt=1),
    )
    output = run_simulation(model)

    assert [r["s"] for r in output.results] == [-5.0, 0.0, 0.0]


def test_shortened_final_step():
    """Test that the last step integrates over the remaining interval only"""
    model = ModelDocument(
        stocks=[Stock(id="s", initial_value="0", formula="1")],
        simulation_config=SimulationConfig(start=0, end=10, dt=3),
    )
    output = run_simulation(model)

    assert [r["time"] for r in output.results] == [0.0, 3.0, 6.0, 9.0, 10.0]
    assert [r["s"] for r in output.results] == [0.0, 3.0, 6.0, 9.0, 10.0]


def test_end_before_start_yields_no_results():
    output = run_simulation(_decay_model(start=10, end=0))
    assert output.results == []
    assert output.is_stable


def test_runs_are_deterministic():
    model = _decay_model()
    assert run_simulation(model).results == run_simulation(model).results


def test_run_does_not_modify_model():
    model = _decay_model()
    before = model.model_dump()
    run_simulation(model, perturbations={"k": 2.0})
    assert model.model_dump() == before


def test_divergence_stops_run():
    """Test that divergence keeps earlier ticks and flags the run"""
    driver = SimulationDriver(_runaway_model())
    output = driver.run()

    assert not output.is_stable
    assert output.error == DIVERGENCE_MESSAGE
    assert output.state == "diverged"
    assert driver.state == RunState.DIVERGED
    # 11^11 < 1e12 < 11^12: ticks 0..11 survive
    assert len(output.results) == 12
    assert output.results[-1]["s"] == pytest.approx(11.0 ** 11)


def test_divergence_on_last_tick_is_detected():
    """Test that the update after the final snapshot is still checked"""
    output = run_simulation(_runaway_model(end=11))

    assert not output.is_stable
    assert output.error == DIVERGENCE_MESSAGE
    assert len(output.results) == 12
    assert output.results[-1]["time"] == 11.0


def test_last_tick_update_is_not_recorded():
    output = run_simulation(_runaway_model(end=10))

    assert output.is_stable
    assert len(output.results) == 11
    assert output.results[-1]["s"] == pytest.approx(11.0 ** 10)


def test_completed_state():
    driver = SimulationDriver(_decay_model())
    assert driver.state == RunState.INITIALIZING
    driver.run()
    assert driver.state == RunState.COMPLETED


def test_perturbations_scale_parameters():
    output = run_simulation(_decay_model(), perturbations={"k": 2.0})

    assert output.results[0]["k"] == pytest.approx(0.2)
    assert output.results[1]["s"] == pytest.approx(80.0)


def test_zero_perturbation_factor_is_applied():
    output = run_simulation(_decay_model(), perturbations={"k": 0.0})
    assert all(r["s"] == 100.0 for r in output.results)


def test_formula_failures_become_diagnostics():
    """Test that a broken converter evaluates to 0 and is reported once"""
    model = ModelDocument(
        converters=[Converter(id="c", formula="missing * 2")],
        simulation_config=SimulationConfig(start=0, end=10, dt=1),
    )
    output = run_simulation(model)

    assert output.is_stable
    assert all(r["c"] == 0.0 for r in output.results)
    assert len(output.diagnostics) == 1

    diagnostic = output.diagnostics[0]
    assert diagnostic.code == "undefined_variable"
    assert diagnostic.element_id == "c"
    assert diagnostic.time == 0.0
    assert diagnostic.count == len(output.results)


def test_ordered_resolution_matches_passes():
    passes = run_simulation(_decay_model())
    ordered = run_simulation(_decay_model(resolution="ordered"))

    assert ordered.results == passes.results


def test_driver_resolution_override():
    driver = SimulationDriver(_decay_model(), mode="ordered", passes=2)
    assert driver.resolver.mode == "ordered"
    assert driver.resolver.passes == 2


def test_euromotion_template_runs_stable():
    """Test the built-in feedback model over its full horizon"""
    model = get_template("euromotion-feedback-v4")
    output = run_simulation(model)

    assert output.is_stable
    assert len(output.results) == 121
    assert output.results[-1]["time"] == 60.0
    for snapshot in output.results:
        for stock in model.stocks:
            assert snapshot[stock.id] >= 0.0
    assert output.diagnostics == []
