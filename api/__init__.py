"""
API 層

- rooms：建立 / 加入 / 狀態 / 參與者 / 選項 / heartbeat
- chat：聊天訊息
- spins：spin 觸發、紀錄、管理用重置
- websocket：push 模式的事件串流
"""
