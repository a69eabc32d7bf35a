"""Repository modules for QuoteBridge persistence (PostgreSQL and in-process)."""

__all__ = [
    "candidate_directory_repo",
    "fulfillment_job_repo",
    "match_result_repo",
    "price_record_repo",
    "sourcing_request_repo",
]
