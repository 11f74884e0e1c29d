class TPCCConstants:
    # TPCC constants
    MAXITEMS = 100000
    CUST_PER_DIST = 3000
    DIST_PER_WARE = 10
    ORD_PER_DIST = 3000

    # o_id >= this fraction of ORD_PER_DIST is still undelivered after load
    NEW_ORDER_FRACTION = 0.7

    MIN_OL_CNT = 5
    MAX_OL_CNT = 15
    MAX_OL_QUANTITY = 10

    # restock rule of the New-Order profile
    RESTOCK_MARGIN = 10
    RESTOCK_AMOUNT = 91

    STOCK_LEVEL_ORDERS = 20
    MIN_STOCK_LEVEL_THRESHOLD = 10
    MAX_STOCK_LEVEL_THRESHOLD = 20

    BAD_CREDIT = "BC"
    GOOD_CREDIT = "GC"
    MAX_C_DATA = 500
    ORIGINAL_STRING = "ORIGINAL"

    MIN_CARRIER_ID = 1
    MAX_CARRIER_ID = 10

    MIN_PAYMENT = 1.0
    MAX_PAYMENT = 5000.0

    # Table names
    TBL_Warehouse = "WAREHOUSE"
    TBL_District = "DISTRICT"
    TBL_Customer = "CUSTOMER"
    TBL_History = "HISTORY"
    TBL_NewOrder = "NEW_ORDER"
    TBL_Order = "ORDERS"
    TBL_OrderLine = "ORDER_LINE"
    TBL_Item = "ITEM"
    TBL_Stock = "STOCK"
