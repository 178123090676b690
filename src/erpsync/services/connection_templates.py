"""Configuration skeletons per ERP system type.

Templates bootstrap a new connection: they carry the shape a given system
usually needs, with placeholder credentials the operator replaces. Unknown
system types fall back to a generic API-key skeleton.
"""

import copy
from typing import Any

_DEFAULT_IMPORT_SETTINGS: dict[str, Any] = {
    "duplicate_handling": "skip",
    "update_existing_orders": False,
    "required_fields": ["order_number", "part_number", "quantity_to_make"],
    "batch_size": 100,
    "auto_import_enabled": False,
}

TEMPLATES: dict[str, dict[str, Any]] = {
    "sap_rest": {
        "connection_config": {
            "auth_type": "basic",
            "auth_config": {"username": "", "password": ""},
            "base_url": "https://your-sap-server.com",
            "endpoints": {
                "orders_list": "/api/production-orders",
                "order_detail": "/api/production-orders/{id}",
            },
            "rate_limit_per_minute": 60,
            "retry_attempts": 3,
            "timeout_seconds": 30,
        },
        "import_settings": {
            **_DEFAULT_IMPORT_SETTINGS,
            "auto_generate_characteristics": True,
        },
    },
    "sap_soap": {
        "connection_config": {
            "auth_type": "basic",
            "auth_config": {"username": "", "password": ""},
            "base_url": "https://your-sap-server.com/sap/bc/srt",
            "endpoints": {"wsdl": "/wsdl/production_order?sap-client=100"},
            "retry_attempts": 3,
            "timeout_seconds": 60,
        },
        "import_settings": dict(_DEFAULT_IMPORT_SETTINGS),
    },
    "oracle_erp": {
        "connection_config": {
            "auth_type": "oauth2",
            "auth_config": {
                "client_id": "",
                "client_secret": "",
                "token_url": "https://your-oracle-instance.com/oauth2/v1/token",
            },
            "base_url": "https://your-oracle-instance.com",
            "endpoints": {"orders_list": "/fscmRestApi/resources/latest/workOrders"},
            "rate_limit_per_minute": 100,
            "retry_attempts": 3,
            "timeout_seconds": 30,
        },
        "import_settings": {**_DEFAULT_IMPORT_SETTINGS, "batch_size": 250},
    },
    "netsuite": {
        "connection_config": {
            "auth_type": "oauth2",
            "auth_config": {"client_id": "", "client_secret": "", "account_id": ""},
            "base_url": "https://your-account.suitetalk.api.netsuite.com",
            "endpoints": {"orders_list": "/services/rest/record/v1/workOrder"},
            "rate_limit_per_minute": 60,
            "retry_attempts": 3,
            "timeout_seconds": 30,
        },
        "import_settings": dict(_DEFAULT_IMPORT_SETTINGS),
    },
    "dynamics365": {
        "connection_config": {
            "auth_type": "oauth2",
            "auth_config": {"client_id": "", "client_secret": "", "tenant_id": ""},
            "base_url": "https://your-org.operations.dynamics.com",
            "endpoints": {"orders_list": "/data/ProductionOrderHeaders"},
            "rate_limit_per_minute": 120,
            "retry_attempts": 3,
            "timeout_seconds": 30,
        },
        "import_settings": {**_DEFAULT_IMPORT_SETTINGS, "batch_size": 200},
    },
    "generic_rest": {
        "connection_config": {
            "auth_type": "api_key",
            "auth_config": {"api_key": "", "api_key_header": "X-API-Key"},
            "base_url": "https://your-erp-system.com",
            "endpoints": {"orders_list": "/api/orders"},
            "rate_limit_per_minute": 100,
            "retry_attempts": 3,
            "timeout_seconds": 30,
        },
        "import_settings": {**_DEFAULT_IMPORT_SETTINGS, "batch_size": 200},
    },
    "generic_soap": {
        "connection_config": {
            "auth_type": "basic",
            "auth_config": {"username": "", "password": ""},
            "base_url": "https://your-erp-system.com/soap",
            "endpoints": {"wsdl": "/service?wsdl"},
            "retry_attempts": 3,
            "timeout_seconds": 60,
        },
        "import_settings": dict(_DEFAULT_IMPORT_SETTINGS),
    },
    "csv_file": {
        "connection_config": {
            "auth_type": "custom",
            "auth_config": {},
            "file_path": "/path/to/orders.csv",
            "delimiter": ",",
            "encoding": "utf-8",
            "polling_interval_minutes": 60,
        },
        "import_settings": {**_DEFAULT_IMPORT_SETTINGS, "batch_size": 500},
    },
    "excel_file": {
        "connection_config": {
            "auth_type": "custom",
            "auth_config": {},
            "file_path": "/path/to/orders.xlsx",
            "sheet_name": "Orders",
            "polling_interval_minutes": 60,
        },
        "import_settings": {**_DEFAULT_IMPORT_SETTINGS, "batch_size": 500},
    },
}

_FALLBACK_TEMPLATE: dict[str, Any] = {
    "connection_config": {
        "auth_type": "api_key",
        "auth_config": {"api_key": "", "api_key_header": "X-API-Key"},
        "base_url": "",
        "endpoints": {},
        "retry_attempts": 3,
        "timeout_seconds": 30,
    },
    "import_settings": {
        "duplicate_handling": "skip",
        "required_fields": ["order_number"],
        "batch_size": 100,
        "auto_import_enabled": False,
    },
}


def template_for(system_type: str) -> dict[str, Any]:
    """Return a fresh configuration skeleton for a system type.

    Args:
        system_type: ERP system type; unknown values (including ``custom``)
            get the generic API-key skeleton.

    Returns:
        Dict with ``erp_system_type``, ``connection_config`` and
        ``import_settings``. Callers may mutate it freely.
    """
    template = copy.deepcopy(TEMPLATES.get(system_type, _FALLBACK_TEMPLATE))
    template["erp_system_type"] = system_type
    return template
