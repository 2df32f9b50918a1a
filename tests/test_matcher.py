from schemas import Material
from services.matcher import match_material

MATERIALS = {
    "m1": {"name": "Plastic bottles"},
    "m2": {"name": "Bottle caps"},
    "m3": {"name": "Cardboard"},
}


def test_material_name_inside_title():
    assert match_material("Old CARDBOARD boxes from moving", MATERIALS) == "m3"


def test_title_inside_material_name():
    assert match_material("plastic", MATERIALS) == "m1"


def test_first_match_in_iteration_order_wins():
    # "bottle" is contained in both m1 and m2 names.
    assert match_material("bottle", MATERIALS) == "m1"


def test_miss_returns_none(caplog):
    assert match_material("Glass jars", MATERIALS) is None
    assert "No material matches" in caplog.text


def test_empty_inputs():
    assert match_material("", MATERIALS) is None
    assert match_material(None, MATERIALS) is None
    assert match_material("bottles", {}) is None
    assert match_material("anything", {"m1": {"name": ""}}) is None


def test_accepts_material_models():
    materials = {"m1": Material(name="Tin cans", needed=3)}
    assert match_material("Tin cans, washed...", materials) == "m1"
