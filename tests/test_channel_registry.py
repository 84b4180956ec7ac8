"""Tests for the channel driver registry and channel loading."""

import json

import pytest

from feedsync.channels.drivers.log import LogSettings, LogTransport
from feedsync.channels.drivers.storefront import (
    StorefrontClient,
    StorefrontSettings,
    StorefrontSyndicator,
)
from feedsync.channels.registry import (
    ChannelDriverRegistry,
    DriverContext,
    DriverSpec,
    load_channels,
)
from feedsync.exceptions import ConfigurationError
from feedsync.models import SalesChannel


class HalfTransport:
    def push(self, model_id, projection, channel):
        return True

    def health_check(self, channel):
        return True


def test_default_registry_resolves_bundled_drivers(driver_registry):
    channel = SalesChannel(
        id=1,
        name="shop",
        driver="storefront",
        api_config={"api_url": "https://shop.example", "api_token": "t"},
    )

    assert driver_registry.drivers() == ["log", "storefront"]
    assert isinstance(driver_registry.get_syndicator(channel), StorefrontSyndicator)
    assert isinstance(driver_registry.get_api_client(channel), StorefrontClient)
    assert driver_registry.get_api_client(channel) is driver_registry.transport_for("storefront")


def test_register_rejects_incomplete_transport(catalog, sync_config):
    registry = ChannelDriverRegistry(DriverContext(catalog=catalog, config=sync_config))
    spec = DriverSpec(
        name="half",
        settings_model=LogSettings,
        projector_factory=lambda ctx: StorefrontSyndicator(ctx.catalog),
        transport_factory=lambda ctx: HalfTransport(),
    )

    with pytest.raises(ConfigurationError, match="push_batch"):
        registry.register(spec)
    assert not registry.has_driver("half")


def test_register_rejects_incomplete_projector(catalog, sync_config):
    registry = ChannelDriverRegistry(DriverContext(catalog=catalog, config=sync_config))
    spec = DriverSpec(
        name="broken",
        settings_model=LogSettings,
        projector_factory=lambda ctx: object(),
        transport_factory=lambda ctx: LogTransport(),
    )

    with pytest.raises(ConfigurationError, match="Projector for driver 'broken'"):
        registry.register(spec)


def test_duplicate_driver_name_rejected(driver_registry):
    from feedsync.channels.drivers.log import LOG_DRIVER

    with pytest.raises(ConfigurationError, match="already registered"):
        driver_registry.register(LOG_DRIVER)


def test_unknown_driver_lists_registered_ones(driver_registry):
    channel = SalesChannel(id=9, name="mystery", driver="ftp")

    with pytest.raises(ConfigurationError, match="Registered drivers: log, storefront"):
        driver_registry.get_syndicator(channel)


def test_bind_settings_parses_typed_settings(driver_registry):
    channel = SalesChannel(
        id=1,
        name="shop",
        driver="storefront",
        api_config={"api_url": "https://shop.example/api", "api_token": "secret"},
    )

    bound = driver_registry.bind_settings(channel)

    assert isinstance(bound.settings, StorefrontSettings)
    assert bound.settings.api_url == "https://shop.example/api/"
    assert bound.settings.api_token.get_secret_value() == "secret"
    assert "secret" not in repr(bound.settings)
    assert channel.settings is None


@pytest.mark.parametrize(
    "api_config",
    [
        {"api_token": "t"},
        {"api_url": "ftp://shop.example", "api_token": "t"},
        {"api_url": "https://shop.example", "api_token": "t", "unexpected": 1},
    ],
)
def test_bind_settings_rejects_bad_api_config(driver_registry, api_config):
    channel = SalesChannel(id=4, name="bad", driver="storefront", api_config=api_config)

    with pytest.raises(ConfigurationError, match="Invalid api_config for channel 4"):
        driver_registry.bind_settings(channel)


def test_load_channels_from_file(driver_registry, tmp_path):
    path = tmp_path / "channels.json"
    path.write_text(
        json.dumps(
            [
                {"id": 2, "name": "b", "driver": "log"},
                {"id": 1, "name": "a", "driver": "log", "is_active": False},
            ]
        ),
        encoding="utf-8",
    )

    channels = load_channels(path, driver_registry)

    assert len(channels) == 2
    assert [c.id for c in channels.all()] == [1, 2]
    assert [c.id for c in channels.active()] == [2]
    assert isinstance(channels.get(2).settings, LogSettings)
    assert channels.get(3) is None


def test_load_channels_none_is_empty(driver_registry):
    assert len(load_channels(None, driver_registry)) == 0


@pytest.mark.parametrize(
    "content, message",
    [
        ("not json", "Cannot read channels file"),
        ('{"id": 1}', "must contain a JSON list"),
        ('[{"id": 1, "name": "a", "driver": "log"}, {"id": 1, "name": "b", "driver": "log"}]',
         "Duplicate channel id 1"),
        ('[{"id": 1, "name": "", "driver": "log"}]', "Invalid channel entry"),
        ('[{"id": 1, "name": "a", "driver": "smtp"}]', "not registered"),
    ],
)
def test_load_channels_fails_fast_on_bad_file(driver_registry, tmp_path, content, message):
    path = tmp_path / "channels.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError, match=message):
        load_channels(path, driver_registry)


def test_missing_channels_file_is_configuration_error(driver_registry, tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read channels file"):
        load_channels(tmp_path / "missing.json", driver_registry)
