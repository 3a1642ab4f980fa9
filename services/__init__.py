"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- SelectionService：加權抽選
- OptionService：預設選項與可轉檢查
- NamingService：房間代碼與名稱驗證
- StateService：state_version 管理
"""
