from maison.utils.admin_gate import admin_required
from maison.utils.clock import format_local_time, local_date
from maison.utils.request_info import client_ip, read_json_body

__all__ = [
    "admin_required",
    "format_local_time",
    "local_date",
    "client_ip",
    "read_json_body",
]
