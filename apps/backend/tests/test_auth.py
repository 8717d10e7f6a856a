import main
from fastapi.testclient import TestClient


def test_all_v1_routes_require_auth() -> None:
    client = TestClient(main.app)

    requests = [
        ("GET", "/v1/health", None),
        ("GET", "/v1/version", None),
        ("GET", "/v1/config", None),
        ("GET", "/v1/actions", None),
        ("GET", "/v1/quota", None),
        ("GET", "/v1/metrics", None),
        ("GET", "/v1/logs/tail", None),
        ("GET", "/v1/logs/search?q=test", None),
        ("POST", "/v1/config/reload", None),
        ("POST", "/v1/quota/reset", None),
        ("POST", "/v1/actions/utility/random_int", {"inputs": {"min": 1, "max": 2}}),
        ("POST", "/v1/actions/file/read_text", {"inputs": {"path": "a.txt"}}),
    ]

    for method, path, payload in requests:
        if method == "GET":
            response = client.get(path)
        else:
            if payload is None:
                response = client.post(path)
            else:
                response = client.post(path, json=payload)
        assert response.status_code == 401, (
            f"{method} {path} should be 401 without auth, got {response.status_code}"
        )


def test_wrong_scheme_and_token_rejected() -> None:
    main.API_TOKEN = "test-token"
    client = TestClient(main.app)
    assert client.get("/v1/health", headers={"Authorization": "Basic test-token"}).status_code == 401
    assert client.get("/v1/health", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/v1/health", headers={"Authorization": "Bearer test-token"}).status_code == 200
