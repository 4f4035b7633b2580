import json
from pathlib import Path

from dripflow.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_every_operation_documents_error_envelope():
    schema = app.openapi()
    for path, operations in schema["paths"].items():
        if not path.startswith(("/segments", "/campaigns")):
            continue
        for method, operation in operations.items():
            error_codes = [code for code in operation["responses"] if code.startswith(("4", "5"))]
            assert error_codes, f"{method.upper()} {path} documents no error responses"
