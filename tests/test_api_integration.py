"""
Integration tests for the Client Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from ledger_service.api import create_app
from ledger_service.async_storage import AsyncInMemoryStorage
from ledger_service.config import LedgerConfig
from ledger_service.exceptions import StorageError


CLIENT_LIMITS = {1: 1000, 2: 80000, 3: 1000000, 4: 10000000, 5: 500000}


class BrokenStorage(AsyncInMemoryStorage):
    """Store that fails every operation as an unreachable database would"""

    async def apply_transaction(self, client_id, amount, kind, description):
        raise StorageError("apply_transaction", ConnectionError("password=secret host down"))

    async def get_statement(self, client_id, size):
        raise StorageError("get_statement", ConnectionError("password=secret host down"))

    async def reset(self):
        raise StorageError("reset", ConnectionError("password=secret host down"))


def make_config(**overrides) -> LedgerConfig:
    settings = {"storage_type": "memory", "client_limits": CLIENT_LIMITS, "log_level": "WARNING"}
    settings.update(overrides)
    return LedgerConfig(**settings)


@pytest.fixture
def client():
    """Create a test client backed by a fresh in-memory store"""
    app = create_app(storage=AsyncInMemoryStorage(CLIENT_LIMITS), config=make_config())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def broken_client():
    app = create_app(storage=BrokenStorage(CLIENT_LIMITS), config=make_config())
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def post_transaction(client, client_id, valor=100, tipo="c", descricao="desc"):
    return client.post(
        f"/clientes/{client_id}/transacoes",
        json={"valor": valor, "tipo": tipo, "descricao": descricao},
    )


def huge_amount_body() -> bytes:
    """JSON whose integer is too long for the interpreter's int parsing limit"""
    return b'{"valor": ' + b"9" * 5000 + b', "tipo": "c", "descricao": "x"}'


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 UTC timestamp whatever the fraction precision"""
    value = value.replace("Z", "+00:00")
    main, _, offset = value.partition("+")
    if "." in main:
        main, fraction = main.split(".")
        main = f"{main}.{fraction.ljust(6, '0')[:6]}"
    parsed = datetime.fromisoformat(f"{main}+{offset}")
    assert parsed.tzinfo is not None
    return parsed


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestTransactions:
    """Test POST /clientes/{id}/transacoes"""

    def test_reference_sequence(self, client):
        r = post_transaction(client, 1, valor=500, tipo="d")
        assert r.status_code == 200
        assert r.json() == {"saldo": -500, "limite": 1000}

        r = post_transaction(client, 1, valor=600, tipo="d")
        assert r.status_code == 422

        r = client.get("/clientes/1/extrato")
        assert r.json()["saldo"]["total"] == -500

        r = post_transaction(client, 1, valor=2000, tipo="c")
        assert r.status_code == 200
        assert r.json() == {"saldo": 1500, "limite": 1000}

    @pytest.mark.parametrize("descricao", ["", "01234567890", None, 123])
    def test_invalid_description(self, client, descricao):
        r = post_transaction(client, 1, descricao=descricao)
        assert r.status_code == 422
        assert r.json()["detail"] == "Descrição inválida"

    @pytest.mark.parametrize("tipo", ["x", "C", "", None, 1])
    def test_invalid_type(self, client, tipo):
        r = post_transaction(client, 1, tipo=tipo)
        assert r.status_code == 422
        assert r.json()["detail"] == "Tipo inválido"

    @pytest.mark.parametrize("valor", [0, -1, 1.5, 10.0, "10", True, None, 2 ** 31])
    def test_invalid_amount(self, client, valor):
        r = post_transaction(client, 1, valor=valor)
        assert r.status_code == 422
        assert r.json()["detail"] == "Valor inválido"

    def test_missing_fields(self, client):
        r = client.post("/clientes/1/transacoes", json={"valor": 10, "tipo": "c"})
        assert r.status_code == 422

    def test_malformed_json(self, client):
        r = client.post(
            "/clientes/1/transacoes",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400

    def test_multibyte_description_counts_characters(self, client):
        r = post_transaction(client, 2, descricao="ação ações")
        assert r.status_code == 200

        r = client.get("/clientes/2/extrato")
        assert r.json()["ultimas_transacoes"][0]["descricao"] == "ação ações"

    def test_rejected_transaction_leaves_no_history(self, client):
        r = post_transaction(client, 1, valor=1001, tipo="d")
        assert r.status_code == 422

        body = client.get("/clientes/1/extrato").json()
        assert body["saldo"]["total"] == 0
        assert body["ultimas_transacoes"] == []


class TestClientIdentity:
    """Unknown client ids are not-found on every endpoint, whatever the body"""

    @pytest.mark.parametrize("client_id", ["0", "6", "abc", "-1", "1.0"])
    def test_transaction_unknown_client(self, client, client_id):
        r = post_transaction(client, client_id)
        assert r.status_code == 404

    @pytest.mark.parametrize("client_id", ["0", "6", "abc"])
    def test_transaction_unknown_client_with_bad_body(self, client, client_id):
        r = post_transaction(client, client_id, valor=-1, tipo="x", descricao="")
        assert r.status_code == 404

        for body in (b"{not json", b"\xff\xfe{", huge_amount_body()):
            r = client.post(
                f"/clientes/{client_id}/transacoes",
                content=body,
                headers={"Content-Type": "application/json"},
            )
            assert r.status_code == 404
            assert r.json()["detail"] == "Cliente não encontrado"

    def test_undecodable_body_for_known_client(self, client):
        r = client.post(
            "/clientes/1/transacoes",
            content=b"\xff\xfe{",
            headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400

    def test_unknown_route_is_plain_not_found(self, client):
        r = client.get("/clientes/1/desconhecido")
        assert r.status_code == 404
        assert r.json()["detail"] == "Not Found"

    @pytest.mark.parametrize("client_id", ["0", "6", "abc"])
    def test_statement_unknown_client(self, client, client_id):
        r = client.get(f"/clientes/{client_id}/extrato")
        assert r.status_code == 404
        assert r.json()["detail"] == "Cliente não encontrado"


class TestStatement:
    """Test GET /clientes/{id}/extrato"""

    def test_empty_statement(self, client):
        r = client.get("/clientes/3/extrato")
        assert r.status_code == 200
        body = r.json()
        assert body["saldo"]["total"] == 0
        assert body["saldo"]["limite"] == 1000000
        parse_timestamp(body["saldo"]["data_extrato"])
        assert body["ultimas_transacoes"] == []

    def test_statement_newest_first_last_ten(self, client):
        for i in range(12):
            tipo = "c" if i % 2 == 0 else "d"
            assert post_transaction(client, 4, valor=i + 1, tipo=tipo, descricao=f"t{i}").status_code == 200

        body = client.get("/clientes/4/extrato").json()
        transactions = body["ultimas_transacoes"]
        assert len(transactions) == 10
        assert [t["descricao"] for t in transactions] == [f"t{i}" for i in range(11, 1, -1)]
        assert transactions[0] == {
            "valor": 12,
            "tipo": "d",
            "descricao": "t11",
            "data": transactions[0]["data"],
        }
        dates = [parse_timestamp(t["data"]) for t in transactions]
        assert dates == sorted(dates, reverse=True)


class TestReset:
    """Test GET /reset"""

    def test_reset_wipes_everything(self, client):
        post_transaction(client, 1, valor=900, tipo="d")
        post_transaction(client, 5, valor=10, tipo="c")

        r = client.get("/reset")
        assert r.status_code == 200

        for client_id in CLIENT_LIMITS:
            body = client.get(f"/clientes/{client_id}/extrato").json()
            assert body["saldo"]["total"] == 0
            assert body["ultimas_transacoes"] == []


class TestStorageFailures:
    """Infrastructure failures are generic and never leak driver detail"""

    def test_transaction_storage_failure(self, broken_client):
        r = post_transaction(broken_client, 1)
        assert r.status_code == 500
        assert "secret" not in r.text

    def test_statement_storage_failure(self, broken_client):
        r = broken_client.get("/clientes/1/extrato")
        assert r.status_code == 500
        assert "secret" not in r.text

    def test_reset_storage_failure(self, broken_client):
        r = broken_client.get("/reset")
        assert r.status_code == 400

    def test_validation_still_applies(self, broken_client):
        assert post_transaction(broken_client, 1, tipo="x").status_code == 422
        assert post_transaction(broken_client, 9).status_code == 404
