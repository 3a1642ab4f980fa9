"""
核心業務邏輯層

這個 package 包含房間同步與 spin 的核心邏輯：
- RoomManager：房間、聊天、spin 紀錄的交易性寫入
- RoomStore：給 async 呼叫端的儲存介面（快照、推播）
- ChangeFeed：push / poll 兩種變更來源
- SpinCoordinator：spin 生命週期（開始、延遲 settle、卡住回復）
- RoomSession：單一 client 在房間內的狀態機
- Locks：並發控制工具
"""
