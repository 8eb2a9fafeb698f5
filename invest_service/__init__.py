"""
Invest Service 投资数据服务
独立的投资数据微服务，提供 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → Twelve Data 行情接口（客户端限流）
  缓存层     (Cache)        → Redis 上的 LRU + stale-while-revalidate 缓存
  持久层     (Persistence)  → MongoDB 日线价格与持仓记录
  处理层     (Processing)   → 行情数据清洗、格式化、标准化
  分析层     (Analysis)     → 持仓估值、FIFO 已实现盈亏、基准对比
"""

__version__ = "1.0.0"
