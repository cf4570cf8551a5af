TOPICS = {
    "loan_submissions": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
    "loan_offers": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
    "offer_decisions": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 7776000000,
    },
}
