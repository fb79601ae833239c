"""Order Service — 見積もりから注文を作り、決済と配送を Saga で実行するサービス"""
