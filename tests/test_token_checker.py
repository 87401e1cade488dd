from __future__ import annotations

import asyncio
import unittest
from typing import Any

import config
from monitor.token_checker import TokenChecker
from trading.models import MintAuthorityStatus
from utils.http_client import HttpResult

MINT = "MintCHK1111111111111111111111111111111111111"


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class FakeRpc:
    def __init__(self, statuses: list[MintAuthorityStatus | Exception]) -> None:
        self.statuses = list(statuses)
        self.calls = 0

    async def mint_authority_status(self, mint: str) -> MintAuthorityStatus:
        self.calls += 1
        item = self.statuses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeHttp:
    def __init__(self, result: HttpResult | None = None, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def post_json(self, url: str, **kwargs: Any) -> HttpResult:
        self.calls.append({"url": url, **kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        assert self.result is not None
        return self.result


class AuthorityTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(AUTHORITY_CACHE_TTL_SECONDS=300)

    def test_revoked_authority_is_cached(self) -> None:
        rpc = FakeRpc([MintAuthorityStatus(mint=MINT)])
        checker = TokenChecker(rpc, FakeHttp())  # type: ignore[arg-type]
        first = asyncio.run(checker.get_authority_status(MINT))
        second = asyncio.run(checker.get_authority_status(MINT))
        self.assertFalse(first.has_any_authority)
        self.assertIs(first, second)
        self.assertEqual(rpc.calls, 1)

    def test_live_authority_is_rechecked(self) -> None:
        rpc = FakeRpc(
            [
                MintAuthorityStatus(mint=MINT, mint_authority="Auth111"),
                MintAuthorityStatus(mint=MINT),
            ]
        )
        checker = TokenChecker(rpc, FakeHttp())  # type: ignore[arg-type]
        self.assertTrue(asyncio.run(checker.get_authority_status(MINT)).has_any_authority)
        self.assertFalse(asyncio.run(checker.get_authority_status(MINT)).has_any_authority)
        self.assertEqual(rpc.calls, 2)

    def test_lookup_failure_propagates_and_is_counted(self) -> None:
        checker = TokenChecker(FakeRpc([ValueError("account not found")]), FakeHttp())  # type: ignore[arg-type]
        with self.assertRaises(ValueError):
            asyncio.run(checker.get_authority_status(MINT))
        stats = checker.runtime_stats(reset=True)
        self.assertEqual(stats["authority_fail"], 1)
        self.assertEqual(stats["fail_reason_top"], "valueerror")
        self.assertEqual(checker.runtime_stats()["authority_checks"], 0)


class HolderCountTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            HELIUS_API_KEY="k-123",
            HELIUS_RPC_URL_TEMPLATE="https://helius.example/?api-key={api_key}",
            HOLDER_CHECK_TIMEOUT_SECONDS=0.6,
        )

    def _checker(self, http: FakeHttp) -> TokenChecker:
        return TokenChecker(FakeRpc([]), http)  # type: ignore[arg-type]

    def test_no_api_key_skips_request(self) -> None:
        self.patch_cfg(HELIUS_API_KEY="")
        http = FakeHttp(HttpResult(ok=True, status=200, data={}))
        self.assertIsNone(asyncio.run(self._checker(http).get_holder_count(MINT)))
        self.assertEqual(http.calls, [])

    def test_total_field_is_used(self) -> None:
        http = FakeHttp(HttpResult(ok=True, status=200, data={"result": {"total": 412}}))
        self.assertEqual(asyncio.run(self._checker(http).get_holder_count(MINT)), 412)
        call = http.calls[0]
        self.assertEqual(call["url"], "https://helius.example/?api-key=k-123")
        self.assertEqual(call["source"], "helius")
        self.assertEqual(call["json_body"]["params"]["mint"], MINT)

    def test_account_list_length_fallback(self) -> None:
        http = FakeHttp(HttpResult(ok=True, status=200, data={"result": {"token_accounts": [{}, {}, {}]}}))
        self.assertEqual(asyncio.run(self._checker(http).get_holder_count(MINT)), 3)

    def test_http_failure_fails_open(self) -> None:
        http = FakeHttp(HttpResult(ok=False, status=500, data=None, error="http_500"))
        checker = self._checker(http)
        self.assertIsNone(asyncio.run(checker.get_holder_count(MINT)))
        self.assertEqual(checker.runtime_stats()["holder_skipped"], 1)

    def test_timeout_fails_open(self) -> None:
        self.patch_cfg(HOLDER_CHECK_TIMEOUT_SECONDS=0.05)
        http = FakeHttp(HttpResult(ok=True, status=200, data={"result": {"total": 5}}), delay=0.5)
        checker = self._checker(http)
        self.assertIsNone(asyncio.run(checker.get_holder_count(MINT)))
        self.assertEqual(checker.runtime_stats()["fail_reason_top"], "holder_timeout")


if __name__ == "__main__":
    unittest.main()
