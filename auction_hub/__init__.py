"""
Auction Hub — リアルタイム・オークション基盤

3 つのプロセスで構成される:

  ┌──────────────┐  auction.events.v1  ┌──────────────────────┐    WebSocket
  │ Auction API  │ ───── Redis ──────▶ │ Notification Gateway │ ─────────────▶ clients
  │ (入札・作成) │      Pub/Sub        │ (ファンアウト)       │
  └──────┬───────┘                     └──────────────────────┘
         │ auction-expiry (遅延タスク)          ▲
  ┌──────▼───────┐                              │
  │ Expiry Worker│ ─────── AUCTION_ENDED ───────┘
  └──────────────┘
"""
