import pytest

from brandvisuals.services.seeds import SEED_MODULUS, SEED_STRIDE, derive_seed, generate_master_seed, seed_for_job


def test_derive_seed_is_deterministic():
    assert derive_seed(123456, 3) == derive_seed(123456, 3)


def test_distinct_indices_give_distinct_spread_out_seeds():
    master = 987654321
    seeds = [derive_seed(master, idx) for idx in range(10)]

    assert len(set(seeds)) == len(seeds)
    assert all(0 <= seed < SEED_MODULUS for seed in seeds)
    assert derive_seed(master, 1) - derive_seed(master, 0) == SEED_STRIDE


def test_derive_seed_wraps_into_positive_domain():
    seed = derive_seed(SEED_MODULUS - 1, 5)

    assert 0 <= seed < SEED_MODULUS


def test_negative_index_is_rejected():
    with pytest.raises(ValueError):
        derive_seed(1, -1)


def test_key_visual_uses_master_seed_directly():
    assert seed_for_job(4242, 0, "key_visual") == 4242
    assert seed_for_job(4242, 2, "variant") == derive_seed(4242, 2)


def test_master_seed_in_range():
    for _ in range(20):
        seed = generate_master_seed()
        assert 0 < seed < SEED_MODULUS
