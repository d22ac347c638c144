import copy
import json

import pytest

from rankwarden.exceptions import CatalogError, UnknownRankError
from rankwarden.ranks.catalog import RankCatalog, Team, get_catalog, reload_catalog
from rankwarden.utils.constants import DEFAULT_CATALOG


def test_default_catalog_levels_and_teams(catalog):
    assert catalog.min_level == 1
    assert catalog.max_level == 15
    assert catalog.rank_for_level(1).name == 'Recruit'
    assert catalog.rank_for_level(15).name == 'Chief of Police'

    assert catalog.team_for_level(5).team is Team.GREEN
    assert catalog.team_for_level(6).team is Team.SILVER
    assert catalog.team_for_level(9).team is Team.SILVER
    assert catalog.team_for_level(10).team is Team.GOLD
    assert catalog.team_for_level(13).team is Team.RED


def test_team_settings(catalog):
    green = catalog.team_definition(Team.GREEN)
    assert (green.badge_prefix, green.badge_range_min, green.badge_range_max) == ('G', 1, 39)
    assert green.lock_weeks == 1
    assert catalog.team_definition('Silver').lock_weeks == 2
    assert catalog.team_definition(Team.GOLD).lock_weeks == 4
    assert catalog.team_definition(Team.RED).lock_weeks == 0
    assert catalog.team_definition(Team.SILVER).capacity == 20
    assert catalog.team_for_badge_prefix('GD').team is Team.GOLD
    assert catalog.team_for_badge_prefix('X') is None


def test_rank_name_lookup(catalog):
    assert catalog.level_for_rank_name('Sergeant I') == 7
    assert catalog.rank_by_name('Captain').team is Team.GOLD
    assert catalog.has_rank('Corporal')
    assert not catalog.has_rank('Admiral')

    with pytest.raises(UnknownRankError):
        catalog.level_for_rank_name('Admiral')
    with pytest.raises(UnknownRankError):
        catalog.rank_for_level(16)


def test_team_bands_are_contiguous(catalog):
    seen = []
    for rank in catalog.ranks:
        if not seen or seen[-1] != rank.team:
            seen.append(rank.team)
    assert seen == [Team.GREEN, Team.SILVER, Team.GOLD, Team.RED]


def _config():
    return copy.deepcopy(DEFAULT_CATALOG)


def test_rejects_gap_in_levels():
    config = _config()
    config['ranks'][3]['level'] = 40
    with pytest.raises(CatalogError):
        RankCatalog.from_config(config)


def test_rejects_overlapping_badge_ranges():
    config = _config()
    config['teams'][1]['badge_range_min'] = 30
    with pytest.raises(CatalogError):
        RankCatalog.from_config(config)


def test_rejects_split_team_band():
    config = _config()
    config['ranks'][1]['team'] = 'Silver'
    with pytest.raises(CatalogError):
        RankCatalog.from_config(config)


def test_rejects_negative_lock_weeks():
    config = _config()
    config['teams'][0]['lock_weeks'] = -1
    with pytest.raises(CatalogError):
        RankCatalog.from_config(config)


def test_rejects_malformed_config():
    with pytest.raises(CatalogError):
        RankCatalog.from_config({'ranks': [{'level': 1}]})


def test_from_file(tmp_path):
    path = tmp_path / 'catalog.json'
    config = _config()
    config['version'] = '2024.2'
    path.write_text(json.dumps(config), encoding='utf-8')

    catalog = RankCatalog.from_file(path)
    assert catalog.version == '2024.2'
    assert catalog.max_level == 15


def test_from_missing_file(tmp_path):
    with pytest.raises(CatalogError):
        RankCatalog.from_file(tmp_path / 'missing.json')


def test_reload_swaps_process_catalog(tmp_path):
    path = tmp_path / 'catalog.json'
    config = _config()
    config['version'] = '2024.3'
    path.write_text(json.dumps(config), encoding='utf-8')

    try:
        reloaded = reload_catalog(path)
        assert reloaded.version == '2024.3'
        assert get_catalog() is reloaded
        # later lookups do not reread the file
        assert get_catalog(tmp_path / 'missing.json') is reloaded
    finally:
        reload_catalog()

    assert get_catalog().version == DEFAULT_CATALOG['version']


def test_failed_reload_keeps_current_catalog(tmp_path):
    current = get_catalog()

    with pytest.raises(CatalogError):
        reload_catalog(tmp_path / 'missing.json')

    assert get_catalog() is current
