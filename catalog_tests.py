#!/usr/bin/env python3
"""
Test Catalog Generator for livedev

Scans the test modules for numbered tests (a `# TEST###: description` comment
directly above a test function, possibly behind decorators) and writes a
markdown table of them to TEST_CATALOG.md.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

TEST_COMMENT = re.compile(r"#\s*TEST(\d+):\s*(.*)")
TEST_FUNCTION = re.compile(r"\s*(?:async\s+)?def\s+(test_\w+)\s*\(")


@dataclass
class TestInfo:
    """Information about a single test"""
    number: str
    function_name: str
    description: str
    file_path: str
    line_number: int


def _numbered_comment(lines: List[str], index: int) -> Optional[re.Match]:
    """The TEST### comment above the function defined at lines[index]"""
    j = index - 1
    while j >= 0 and (lines[j].strip().startswith("@") or lines[j].strip() == ""):
        j -= 1
    while j >= 0 and lines[j].strip().startswith("#"):
        match = TEST_COMMENT.match(lines[j].strip())
        if match:
            return match
        j -= 1
    return None


def extract_test_info(file_path: Path, root: Path) -> List[TestInfo]:
    try:
        lines = file_path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        print(f"Warning: Could not read {file_path}: {e}")
        return []

    tests = []
    for i, line in enumerate(lines):
        function = TEST_FUNCTION.match(line)
        if not function:
            continue
        comment = _numbered_comment(lines, i)
        if comment is None:
            continue
        tests.append(TestInfo(
            number=comment.group(1),
            function_name=function.group(1),
            description=comment.group(2).strip(),
            file_path=str(file_path.relative_to(root)),
            line_number=i + 1,
        ))
    return tests


def scan_directory(root_dir: Path) -> List[TestInfo]:
    all_tests = []
    for py_file in sorted(root_dir.rglob("test_*.py")):
        all_tests.extend(extract_test_info(py_file, root_dir.parent))
    return all_tests


def duplicate_numbers(tests: List[TestInfo]) -> Dict[str, List[TestInfo]]:
    seen: Dict[str, List[TestInfo]] = {}
    for test in tests:
        seen.setdefault(test.number, []).append(test)
    return {number: items for number, items in seen.items() if len(items) > 1}


def generate_markdown_table(tests: List[TestInfo], output_file: Path) -> None:
    tests_sorted = sorted(tests, key=lambda t: int(t.number))
    with open(output_file, "w", encoding="utf-8") as f:
        f.write("# livedev Test Catalog\n\n")
        f.write(f"**Total Tests:** {len(tests_sorted)}\n\n")
        f.write("| Test # | Function Name | Description | Location |\n")
        f.write("|--------|---------------|-------------|----------|\n")
        for test in tests_sorted:
            description = test.description.replace("|", "\\|")
            f.write(f"| test{test.number} | `{test.function_name}` | {description} | {test.file_path}:{test.line_number} |\n")


def main():
    script_dir = Path(__file__).parent
    tests_dir = script_dir / "tests"
    if not tests_dir.exists():
        print(f"Warning: {tests_dir} not found")
        return

    all_tests = scan_directory(tests_dir)
    print(f"Found {len(all_tests)} numbered tests in {tests_dir}")

    for number, items in sorted(duplicate_numbers(all_tests).items()):
        places = ", ".join(f"{t.file_path}:{t.line_number}" for t in items)
        print(f"Warning: TEST{number} used more than once: {places}")

    output_file = script_dir / "TEST_CATALOG.md"
    generate_markdown_table(all_tests, output_file)
    print(f"Catalog written to {output_file}")

    ranges: Dict[str, int] = {}
    for test in all_tests:
        century = (int(test.number) // 100) * 100
        key = f"{century:03d}-{century + 99:03d}"
        ranges[key] = ranges.get(key, 0) + 1
    for key in sorted(ranges):
        print(f"  {key}: {ranges[key]} tests")


if __name__ == "__main__":
    main()
