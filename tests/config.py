from libb import Setting

Setting.unlock()

sqlite = Setting()
sqlite.drivername='sqlite'
sqlite.database=':memory:'
sqlite.timeout=5
sqlite.max_prepared_statements=64

Setting.lock()
