from pathlib import PurePosixPath

from fuzzci.common.path import new_local_path, reports_url, sanitize_path_segment

def test_sanitize_path_segment():
    assert sanitize_path_segment("master") == "master"
    assert sanitize_path_segment("feature/fuzzing") == "feature_fuzzing"
    assert sanitize_path_segment("a\\b:c*d?e\"f<g>h|i") == "a_b_c_d_e_f_g_h_i"
    assert sanitize_path_segment("tab\there") == "tab_here"
    assert sanitize_path_segment("..") == "_"
    assert sanitize_path_segment(".") == "_"
    assert sanitize_path_segment("") == "_"
    assert sanitize_path_segment("con") == "_"
    assert sanitize_path_segment("trailing.") == "trailing_"
    assert len(sanitize_path_segment("x" * 1000)) == 255

def test_new_local_path():
    assert new_local_path(["feature/x", "abc1234-2024"]) == PurePosixPath("feature_x/abc1234-2024")
    # a segment never escapes its parent
    assert new_local_path(["..", "b"]).parts == ("_", "b")

def test_reports_url():
    rel = PurePosixPath("feature x/abc-1/proj")
    assert reports_url("http://host/reports/", rel) == "http://host/reports/feature%20x/abc-1/proj/"
    assert reports_url("http://host/reports", rel) == "http://host/reports/feature%20x/abc-1/proj/"
    assert reports_url("http://host/", PurePosixPath("a%b")) == "http://host/a%25b/"
