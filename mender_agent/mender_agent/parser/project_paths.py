"""Where generated test files are placed."""

from pathlib import PurePosixPath

DEFAULT_TEST_OUTPUT_DIR = "tests"

PYTHON_EXTENSIONS = {".py", ".pyi"}


def build_test_file_name(source_path: str) -> str:
    """`add.ts` -> `add.test.ts`, `add.py` -> `test_add.py`."""
    path = PurePosixPath(source_path)
    if path.suffix in PYTHON_EXTENSIONS:
        return f"test_{path.stem}.py"
    return f"{path.stem}.test{path.suffix}"


def generate_test_file_path(
    source_path: str,
    strategy: str = "colocated",
    test_output_dir: str | None = None,
) -> str:
    """
    Compute the project-relative test path for a source file.

    Args:
        source_path: Project-relative path of the source file
        strategy: 'colocated' (next to the source) or 'root' (mirrored under
            the test output directory)
        test_output_dir: Test directory for the 'root' strategy

    Returns:
        POSIX path of the test file
    """
    source = PurePosixPath(source_path.removeprefix("./"))
    name = build_test_file_name(source.as_posix())

    if strategy == "root":
        base = PurePosixPath(test_output_dir or DEFAULT_TEST_OUTPUT_DIR)
        return (base / source.parent / name).as_posix()

    return (source.parent / name).as_posix()
