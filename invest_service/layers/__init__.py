"""
投资数据分层架构
  Layer 1 – Acquisition  : Twelve Data 行情拉取（固定间隔限流）
  Layer 2 – Cache        : Redis 投资缓存（LRU + TTL + stale-while-revalidate）
  Layer 3 – Processing   : 日线清洗与标准化
  Layer 4 – Analysis     : 持仓估值、FIFO、市值曲线、基准对比
  Persistence            : MongoDB 永久价格存储与组合记录
"""
