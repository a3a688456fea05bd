"""
Tests for the control mapping tables and ControlMapper.
"""

import shutil
import tempfile
import unittest
from pathlib import Path

from complyvault.config.settings import DEFAULT_MAPPING_FILES
from complyvault.mapping.control_mapper import (
    ControlMapper,
    ControlMappingTable,
    MappingConfigError,
    load_mapping_table,
    load_mapping_tables,
)


def _table(controls: dict, framework: str = "nist-800-53", version: str = "1") -> ControlMappingTable:
    return ControlMappingTable.from_dict(
        {"framework": framework, "version": version, "controls": controls}
    )


class TestControlMappingTable(unittest.TestCase):
    """Tests for table validation."""

    def test_valid_table(self) -> None:
        table = _table(
            {
                "AC-2": {"title": "Account Management", "patterns": ["org_members.*"]},
                "RA-5": ["dependabot_alerts.*"],
            }
        )

        self.assertEqual(table.framework, "nist-800-53")
        self.assertEqual(table.control_ids, ["AC-2", "RA-5"])
        self.assertEqual(table.controls[0].title, "Account Management")
        self.assertEqual(table.controls[1].patterns, ("dependabot_alerts.*",))

    def test_numeric_version_is_string(self) -> None:
        table = ControlMappingTable.from_dict(
            {"framework": "cmmc-2", "version": 2.0, "controls": {"AC.L2-3.1.1": ["a.json"]}}
        )
        self.assertEqual(table.version, "2.0")

    def test_problems_are_aggregated(self) -> None:
        """Test every problem is reported, not just the first."""
        with self.assertRaises(MappingConfigError) as cm:
            ControlMappingTable.from_dict(
                {
                    "framework": "NIST 800-53",
                    "controls": {
                        "AC-2": {"patterns": []},
                        "AC/3": ["x.json"],
                        "AC-5": ["../etc/passwd"],
                        "AC-6": "org_members.*",
                    },
                }
            )

        problems = cm.exception.problems
        self.assertEqual(len(problems), 6)
        self.assertTrue(any("framework" in p for p in problems))
        self.assertTrue(any("version" in p for p in problems))
        self.assertTrue(any("AC-2" in p for p in problems))
        self.assertTrue(any("'AC/3'" in p for p in problems))
        self.assertTrue(any("AC-5" in p for p in problems))
        self.assertTrue(any("AC-6" in p for p in problems))

    def test_top_level_not_mapping(self) -> None:
        with self.assertRaises(MappingConfigError):
            ControlMappingTable.from_dict(["AC-2"])

    def test_empty_controls(self) -> None:
        with self.assertRaises(MappingConfigError):
            _table({})


class TestLoadMappingTables(unittest.TestCase):
    """Tests for loading tables from YAML files."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name: str, text: str) -> str:
        path = self.temp_dir / name
        path.write_text(text)
        return str(path)

    def test_shipped_tables_load(self) -> None:
        tables = load_mapping_tables(DEFAULT_MAPPING_FILES)

        self.assertEqual([t.framework for t in tables], ["cmmc-2", "nist-800-53"])
        nist = tables[1]
        self.assertIn("AC-2", nist.control_ids)
        self.assertIn("RA-5", nist.control_ids)

    def test_duplicate_keys_rejected(self) -> None:
        path = self._write(
            "dup.yaml",
            "framework: nist-800-53\nversion: 1\ncontrols:\n"
            "  AC-2: [a.json]\n  AC-2: [b.json]\n",
        )
        with self.assertRaises(MappingConfigError) as cm:
            load_mapping_table(path)
        self.assertIn("duplicate key", str(cm.exception))

    def test_missing_file(self) -> None:
        with self.assertRaises(MappingConfigError) as cm:
            load_mapping_table(self.temp_dir / "missing.yaml")
        self.assertIn("Cannot read", str(cm.exception))

    def test_framework_name_mismatch(self) -> None:
        path = self._write(
            "cmmc.yaml", "framework: cmmc-2\nversion: 1\ncontrols:\n  X-1: [a.json]\n"
        )
        with self.assertRaises(MappingConfigError) as cm:
            load_mapping_tables({"nist-800-53": path})
        self.assertIn("configured as 'nist-800-53'", str(cm.exception))

    def test_errors_from_all_tables(self) -> None:
        good = self._write("good.yaml", "framework: a\nversion: 1\ncontrols:\n  X-1: [a.json]\n")
        bad_one = self._write("bad1.yaml", "framework: b\nversion: 1\ncontrols: {}\n")
        bad_two = self._write("bad2.yaml", "framework: [c\n")

        with self.assertRaises(MappingConfigError) as cm:
            load_mapping_tables({"a": good, "b": bad_one, "c": bad_two})

        self.assertEqual(len(cm.exception.problems), 2)


class TestControlMapper(unittest.TestCase):
    """Tests for fan-out of artifact files to controls."""

    def setUp(self) -> None:
        self.nist = _table(
            {
                "AC-2": ["org_members.json", "repo_collaborators.json"],
                "AT-2": ["security_training.*"],
                "RA-5": ["dependabot_alerts.*"],
            }
        )

    def test_account_management_gets_two_copies(self) -> None:
        """Test one control with two matching artifacts yields two copies."""
        files = ["org_members.json", "repo_collaborators.json", "dependabot_alerts.json"]

        evidence = ControlMapper([self.nist]).map_artifacts(files)[0]

        copies = evidence.copies_for("AC-2")
        self.assertEqual(
            [c.destination for c in copies],
            [
                "controls/nist-800-53/AC-2/AC-2__org_members.json",
                "controls/nist-800-53/AC-2/AC-2__repo_collaborators.json",
            ],
        )
        self.assertEqual(
            [c.source_artifact for c in copies],
            ["org_members.json", "repo_collaborators.json"],
        )
        self.assertEqual(len(evidence.audit_rows()), 3)

    def test_unmatched_control_is_not_automated(self) -> None:
        evidence = ControlMapper([self.nist]).map_artifacts(["org_members.json"])[0]

        self.assertEqual(evidence.controls_without_evidence, ["AT-2", "RA-5"])
        statuses = {c["control_id"]: c["status"] for c in evidence.coverage_document()["controls"]}
        self.assertEqual(statuses["AC-2"], "automated")
        self.assertEqual(statuses["AT-2"], "not_automated")

    def test_wildcard_matches_json_and_csv(self) -> None:
        evidence = ControlMapper([self.nist]).map_artifacts(
            ["dependabot_alerts.csv", "dependabot_alerts.json"]
        )[0]
        self.assertEqual(
            [c.source_artifact for c in evidence.copies_for("RA-5")],
            ["dependabot_alerts.csv", "dependabot_alerts.json"],
        )

    def test_matching_is_case_sensitive(self) -> None:
        evidence = ControlMapper([self.nist]).map_artifacts(["Org_Members.json"])[0]
        self.assertEqual(evidence.copies, [])

    def test_frameworks_are_independent(self) -> None:
        cmmc = _table({"AC.L2-3.1.1": ["org_members.*"]}, framework="cmmc-2")

        results = ControlMapper([cmmc, self.nist]).map_artifacts(["org_members.json"])

        self.assertEqual([r.framework for r in results], ["cmmc-2", "nist-800-53"])
        self.assertEqual(len(results[0].copies), 1)
        self.assertEqual(len(results[1].copies), 1)
        self.assertTrue(results[0].copies[0].destination.startswith("controls/cmmc-2/"))

    def test_duplicate_framework(self) -> None:
        with self.assertRaises(MappingConfigError):
            ControlMapper([self.nist, self.nist])

    def test_no_files(self) -> None:
        evidence = ControlMapper([self.nist]).map_artifacts([])[0]
        self.assertEqual(evidence.coverage_document()["controls_with_evidence"], 0)
        self.assertEqual(evidence.coverage_document()["controls_total"], 3)


if __name__ == "__main__":
    unittest.main()
