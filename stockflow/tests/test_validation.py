"""
Tests for model validation
"""

from stockflow.models import (
    Converter,
    Flow,
    Link,
    ModelDocument,
    Parameter,
    SimulationConfig,
    Stock,
)
from stockflow.templates import get_template
from stockflow.validation import (
    detect_algebraic_loops,
    get_validation_summary,
    validate_flow_endpoints,
    validate_formulas,
    validate_identifiers,
    validate_links,
    validate_model,
    validate_parameter_ranges,
    validate_simulation_config,
)


def _valid_model():
    return ModelDocument(
        parameters=[Parameter(id="k", value=0.1, min=0, max=1)],
        stocks=[Stock(id="s", initial_value="100", formula="-outflow")],
        flows=[Flow(id="outflow", formula="k * s", source_id="s")],
        links=[
            Link(id="l1", source="k", target="outflow", polarity="+"),
            Link(id="l2", source="s", target="outflow", polarity="+"),
            Link(id="l3", source="outflow", target="s", polarity="-"),
        ],
        simulation_config=SimulationConfig(start=0, end=10, dt=1),
    )


def _codes(findings):
    return [f.code for f in findings]


def test_validate_valid_model():
    """Test that a well-formed model has no errors or warnings"""
    result = validate_model(_valid_model())

    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_validate_template_model():
    result = validate_model(get_template("euromotion-feedback-v4"))

    assert result.valid
    assert "algebraic_loop" not in _codes(result.warnings)
    assert "undefined_variable" not in _codes(result.warnings)


# ============================================================================
# Configuration
# ============================================================================


def test_config_end_before_start():
    errors = validate_simulation_config(SimulationConfig(start=10, end=0, dt=1))
    assert _codes(errors) == ["invalid_time_range"]


def test_config_non_positive_dt():
    config = SimulationConfig.model_construct(start=0.0, end=10.0, dt=0.0, resolution=None)
    assert _codes(validate_simulation_config(config)) == ["invalid_time_step"]


def test_config_too_many_steps():
    errors = validate_simulation_config(SimulationConfig(start=0, end=100, dt=1), max_steps=50)
    assert _codes(errors) == ["too_many_steps"]

    assert validate_simulation_config(SimulationConfig(start=0, end=100, dt=1), max_steps=101) == []


# ============================================================================
# Identifiers
# ============================================================================


def test_duplicate_identifier():
    model = ModelDocument(
        parameters=[Parameter(id="x", value=1)],
        converters=[Converter(id="x", formula="1")],
    )
    errors = validate_identifiers(model)

    assert _codes(errors) == ["duplicate_id"]
    assert errors[0].element_id == "x"


def test_reserved_identifiers():
    model = ModelDocument(
        parameters=[Parameter(id="min", value=1)],
        converters=[Converter(id="time", formula="1")],
    )
    errors = validate_identifiers(model)

    assert _codes(errors) == ["reserved_id", "reserved_id"]
    assert {e.element_id for e in errors} == {"min", "time"}


# ============================================================================
# Formulas
# ============================================================================


def test_formula_syntax_error():
    model = ModelDocument(converters=[Converter(id="c", formula="a +")])
    errors, warnings = validate_formulas(model)

    assert _codes(errors) == ["syntax_error"]
    assert errors[0].element_id == "c"
    assert errors[0].field == "formula"
    assert warnings == []


def test_formula_syntax_error_in_initial_value():
    model = ModelDocument(stocks=[Stock(id="s", initial_value="(1")])
    errors, _ = validate_formulas(model)

    assert _codes(errors) == ["syntax_error"]
    assert errors[0].field == "initial_value"


def test_formula_disallowed_function():
    model = ModelDocument(converters=[Converter(id="c", formula="eval(1) + Math.min(1, 2)")])
    errors, _ = validate_formulas(model)

    assert _codes(errors) == ["function_not_allowed"]
    assert errors[0].context["function"] == "eval"


def test_formula_undefined_identifier_is_warning():
    """Test that unresolved names warn (they evaluate to 0) with suggestions"""
    model = ModelDocument(
        parameters=[Parameter(id="growth_rate", value=0.1)],
        converters=[Converter(id="c", formula="growth_rat * time")],
        links=[Link(id="l1", source="growth_rate", target="c")],
    )
    result = validate_model(model)

    assert result.valid
    assert _codes(result.warnings) == ["undefined_variable"]
    assert "growth_rate" in result.warnings[0].suggestion


# ============================================================================
# Structure
# ============================================================================


def test_link_endpoints_must_exist():
    model = _valid_model()
    model.links.append(Link(id="l9", source="ghost", target="s"))
    warnings = validate_links(model)

    assert _codes(warnings) == ["invalid_link_source"]
    assert warnings[0].element_id == "l9"


def test_missing_link_for_formula_dependency():
    model = _valid_model()
    model.links = [link for link in model.links if link.id != "l1"]
    warnings = validate_links(model)

    assert _codes(warnings) == ["missing_link"]
    assert warnings[0].context == {"source": "k", "target": "outflow"}


def test_flow_endpoint_must_be_stock():
    model = ModelDocument(
        parameters=[Parameter(id="k", value=1)],
        stocks=[Stock(id="s")],
        flows=[Flow(id="f", formula="1", source_id="s", target_id="k")],
    )
    warnings = validate_flow_endpoints(model)

    assert _codes(warnings) == ["invalid_flow_endpoint"]
    assert warnings[0].field == "target_id"


def test_parameter_out_of_range():
    model = ModelDocument(parameters=[Parameter(id="p", value=5, min=0, max=2)])
    assert _codes(validate_parameter_ranges(model)) == ["parameter_out_of_range"]


def test_algebraic_loop_warning():
    model = ModelDocument(
        converters=[
            Converter(id="x", formula="y + 1"),
            Converter(id="y", formula="x * 0.5"),
        ],
    )
    warnings = detect_algebraic_loops(model)

    assert _codes(warnings) == ["algebraic_loop"]
    assert warnings[0].context == {"cycle": ["x", "y"]}


def test_warnings_do_not_invalidate():
    model = _valid_model()
    model.parameters[0].value = 5.0
    result = validate_model(model)

    assert result.valid
    assert _codes(result.warnings) == ["parameter_out_of_range"]


# ============================================================================
# Summary
# ============================================================================


def test_validation_summary():
    model = ModelDocument(
        parameters=[Parameter(id="x", value=1)],
        converters=[Converter(id="x", formula="1 +")],
        simulation_config=SimulationConfig(start=5, end=0, dt=1),
    )
    result = validate_model(model)
    summary = get_validation_summary(result)

    assert not result.valid
    assert summary["valid"] is False
    assert summary["error_count"] == 3
    assert summary["errors_by_code"] == {
        "invalid_time_range": 1,
        "duplicate_id": 1,
        "syntax_error": 1,
    }
    assert summary["errors_by_element"] == {"config": 1, "x": 2}


def test_initial_value_references_outside_seed_scope():
    """Test that initial values may only see parameters, time and earlier stocks"""
    model = ModelDocument(
        parameters=[Parameter(id="k", value=2)],
        stocks=[
            Stock(id="a", initial_value="k * time + 1"),
            Stock(id="b", initial_value="a + c"),
            Stock(id="c", initial_value="rate + b"),
        ],
        flows=[Flow(id="rate", formula="k")],
        links=[
            Link(id="l1", source="k", target="rate"),
        ],
    )
    errors, warnings = validate_formulas(model)

    assert errors == []
    assert _codes(warnings) == ["unavailable_at_initialization"] * 2
    assert [(w.element_id, w.context["reference"]) for w in warnings] == [
        ("b", "c"),
        ("c", "rate"),
    ]
    assert all(w.field == "initial_value" for w in warnings)
