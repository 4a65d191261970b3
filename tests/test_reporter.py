import json

import pytest

from nbnet.reporter import (
    StatusCounter,
    compare_by_segment,
    failing,
    main,
    sort_by_segment,
)


def _write_report(tmp_path, cases):
    """cases: list of (server, case_id, behavior, description)."""
    report = {}
    for idx, (server, case_id, behavior, desc) in enumerate(cases):
        name = f"case_{idx}.json"
        (tmp_path / name).write_text(
            json.dumps(
                {"description": desc, "expectation": "exp-" + desc, "result": "res-" + desc, "duration": 1}
            )
        )
        report.setdefault(server, {})[case_id] = {
            "behavior": behavior,
            "behaviorClose": "OK",
            "duration": 1,
            "removeCloseCode": 0,
            "reportFile": name,
        }
    path = tmp_path / "index.json"
    path.write_text(json.dumps(report))
    return str(path)


def _counts(text):
    result = {}
    for line in text.splitlines():
        name, sep, value = line.partition(":")
        if sep and value.strip().isdigit() and " " not in name:
            result[name] = int(value.strip())
    return result


def test_failing():
    assert failing("UNCLEAN") is True
    assert failing("FAILED") is True
    assert failing("OK") is False
    assert failing("NON-STRICT") is False
    assert failing("INFORMATIONAL") is False


def test_status_counter_counts_each_status():
    counter = StatusCounter()
    for status in ["OK", "OK", "INFORMATIONAL", "UNIMPLEMENTED", "NON-STRICT", "UNCLEAN", "FAILED"]:
        counter.inc(status)
    assert counter.total == 7
    assert counter.ok == 2
    assert counter.informational == 1
    assert counter.unimplemented == 1
    assert counter.non_strict == 1
    assert counter.unclean == 1
    assert counter.failed == 1


def test_status_counter_rejects_unknown_status():
    with pytest.raises(ValueError):
        StatusCounter().inc("bogus")


def test_compare_by_segment_numeric():
    assert compare_by_segment("1.2", "1.10") < 0
    assert compare_by_segment("2.1", "1.9") > 0
    assert compare_by_segment("3.4.5", "3.4.5") == 0


def test_compare_by_segment_prefix_orders_longer_first():
    assert compare_by_segment("1.1", "1.1.1") > 0
    assert compare_by_segment("1.1.1", "1.1") < 0


def test_compare_by_segment_invalid():
    with pytest.raises(ValueError):
        compare_by_segment("a.1", "1.1")


def test_sort_by_segment_in_place():
    cases = ["1.10", "1.2", "1.1", "10.1", "2.1"]
    sort_by_segment(cases)
    assert cases == ["1.1", "1.2", "1.10", "2.1", "10.1"]


def test_main_passing_report(tmp_path, capsys):
    path = _write_report(
        tmp_path,
        [("srv", "1.1", "OK", "a"), ("srv", "1.2", "INFORMATIONAL", "b")],
    )
    assert main([path]) == 0
    err = capsys.readouterr().err
    assert "TEST OK" in err
    assert "TEST FAILED" not in err
    assert "desc:" not in err
    counts = _counts(err)
    assert counts["TOTAL"] == 2
    assert counts["OK"] == 1
    assert counts["INFORMATIONAL"] == 1
    assert counts["FAILED"] == 0


def test_main_summary_underline_and_alignment(tmp_path, capsys):
    path = _write_report(tmp_path, [("srv", "1.1", "OK", "a")])
    main([path])
    lines = capsys.readouterr().err.splitlines()
    idx = lines.index('AGENT "srv" SUMMARY (OK)')
    assert lines[idx + 1] == "=" * len(lines[idx])
    names = ["TOTAL:", "OK:", "INFORMATIONAL:", "UNIMPLEMENTED:", "NON-STRICT:", "UNCLEAN:", "FAILED:"]
    block = lines[idx + 2 : idx + 2 + len(names)]
    assert [line.split()[0] for line in block] == names
    starts = {len(line) - len(line.split()[-1]) for line in block}
    assert len(starts) == 1


def test_main_failing_report(tmp_path, capsys):
    path = _write_report(
        tmp_path,
        [("srv", "2.1", "FAILED", "broken"), ("srv", "1.1", "OK", "fine")],
    )
    assert main([path]) == 1
    err = capsys.readouterr().err
    assert "TEST FAILED" in err
    assert 'AGENT "srv" SUMMARY (FAILED)' in err
    assert "broken" in err
    assert "exp-broken" in err
    assert "res-broken" in err
    assert "fine" not in err


def test_main_verbose_lists_cases_in_order(tmp_path, capsys):
    path = _write_report(
        tmp_path,
        [("srv", "1.10", "OK", "x"), ("srv", "1.2", "OK", "y"), ("srv", "1.1", "OK", "z")],
    )
    assert main(["--verbose", path]) == 0
    lines = capsys.readouterr().err.splitlines()
    case_lines = [line.split()[1] for line in lines if line.startswith("srv ")]
    assert case_lines == ["1.1", "1.2", "1.10"]
    header = lines.index('AGENT "srv"')
    assert lines[header + 1] == "=" * len('AGENT "srv"')


def test_main_servers_sorted(tmp_path, capsys):
    path = _write_report(tmp_path, [("zeta", "1.1", "OK", "a"), ("alpha", "1.1", "OK", "b")])
    main([path])
    err = capsys.readouterr().err
    assert err.index('AGENT "alpha"') < err.index('AGENT "zeta"')


def test_main_without_argument(capsys):
    assert main([]) == 1
    assert "Usage" in capsys.readouterr().err


def test_main_missing_report(tmp_path, capsys):
    assert main([str(tmp_path / "missing.json")]) == 1


def test_main_unknown_behavior_raises(tmp_path):
    path = _write_report(tmp_path, [("srv", "1.1", "WEIRD", "a")])
    with pytest.raises(ValueError):
        main([path])