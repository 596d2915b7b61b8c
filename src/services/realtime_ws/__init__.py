# src/services/realtime_ws/__init__.py
"""
Real-time сессии поверх WebSocket.

Обеспечивает:
- пространства chat и tracking с комнатами conversation:<id> и vehicle:<id>
- очередь исходящих кадров на каждую сессию
- рассылку между процессами через Redis Pub/Sub
"""
