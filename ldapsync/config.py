#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
from envyaml import EnvYAML

from ldapsync.logger import logger

# lower case log levels are accepted as well
log_level_mappings = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "fatal": "CRITICAL",
    "critical": "CRITICAL",
}


def load_config(config_file=None):
    configuration = _default_config()
    if config_file is not None:
        logger.info(f"Loading config from {config_file}")
        configuration = dict(
            _merge_dicts(configuration, EnvYAML(config_file).export())
        )
    configuration["service"]["log_level"] = _log_level(
        configuration["service"]["log_level"]
    )
    return configuration


def _default_config():
    return {
        "ldap": {
            "page_size": 1000,
            "connect_timeout": 5,
            "retries": 3,
        },
        "service": {
            "log_level": "INFO",
            "max_concurrent_jobs": 4,
            "poll_interval": 0.5,
            "secret_key": None,
        },
        "reconciliation": {
            "locale": "en",
            "messages": {},
        },
        "directory": None,
    }


def _log_level(value):
    if value is None:
        return "INFO"
    value = str(value)
    if value.upper() in log_level_mappings.values():
        return value.upper()
    if value.lower() not in log_level_mappings:
        msg = f"Unexpected log level: {value}. Allowed values: {', '.join(log_level_mappings.keys())}"
        raise ValueError(msg)
    return log_level_mappings[value.lower()]


def _merge_dicts(hsh1, hsh2):
    for k in set(hsh1.keys()).union(hsh2.keys()):
        if k in hsh1 and k in hsh2:
            if isinstance(hsh1[k], dict) and isinstance(
                hsh2[k], dict
            ):  # only merge objects
                yield (k, dict(_merge_dicts(hsh1[k], hsh2[k])))
            else:
                yield (k, hsh2[k])
        elif k in hsh1:
            yield (k, hsh1[k])
        else:
            yield (k, hsh2[k])
