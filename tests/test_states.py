from dembot.states import normalize_state_name, state_to_region


def test_normalize_state_abbreviations_and_aliases():
    assert normalize_state_name("OH") == "Ohio"
    assert normalize_state_name("cali") == "California"
    assert normalize_state_name("D.C.") == "District of Columbia"


def test_normalize_state_prefixes_and_spacing():
    assert normalize_state_name("State of  New   York") == "New York"
    assert normalize_state_name("Commonwealth of Virginia") == "Virginia"
    assert normalize_state_name("new jersey") == "New Jersey"


def test_normalize_state_unknown():
    assert normalize_state_name("") is None
    assert normalize_state_name(None) is None
    assert normalize_state_name("Atlantis") is None


def test_state_to_region():
    assert state_to_region("MI") == "rust_belt"
    assert state_to_region("Texas") == "south"
    assert state_to_region("wash") == "west"
    assert state_to_region("Puerto Rico") is None
