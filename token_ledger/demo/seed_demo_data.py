# token_ledger/demo/seed_demo_data.py

from token_ledger.config.loader import LedgerConfig
from token_ledger.core.consumption import ConsumeOptions
from token_ledger.service import build_service

service = build_service(
    config=LedgerConfig(permissions={"demo-admin": frozenset({"users:write", "users:admin"})})
)

for user_id, balance in [("alice", 100), ("bob", 8)]:
    if service.get_token_balance(user_id) is None:
        service.open_account(user_id, balance)

service.consume_tokens("alice", "siterank", "domain_analysis")
service.consume_tokens("alice", "batchopen", "puppeteer", ConsumeOptions(batch_size=5))  # batch
service.consume_tokens("bob", "adscenter", "link_replace")
service.add_tokens("bob", 20, "Demo top-up", "demo-admin")

print("Demo ledger data inserted")
