"""Tests for watermark code generation."""
import itertools
import threading

import pytest

from streamvault.services.codes import CodeGenerator, to_base36


def test_to_base36_pads_and_uppercases():
    assert to_base36(0, 2) == "00"
    assert to_base36(35, 1) == "Z"
    assert to_base36(36, 2) == "10"
    assert to_base36(1000, 8) == "000000RS"


def test_to_base36_rejects_negative():
    with pytest.raises(ValueError):
        to_base36(-1, 2)


def test_generate_layout():
    generator = CodeGenerator(instance_id="x1", clock=lambda: 1.0)

    assert generator.generate() == "000000RSX100"
    assert generator.generate() == "000000RSX101"


def test_sequence_wraps_at_two_base36_digits():
    generator = CodeGenerator(instance_id="X1", clock=lambda: 1.0)
    generator._sequence = itertools.count(1295)

    assert generator.generate().endswith("ZZ")
    assert generator.generate().endswith("00")


def test_codes_are_unique_under_concurrency():
    generator = CodeGenerator(instance_id="X1", clock=lambda: 1700000000.0)
    codes = []
    lock = threading.Lock()

    def worker():
        for _ in range(50):
            code = generator.generate()
            with lock:
                codes.append(code)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(codes) == 400
    assert len(set(codes)) == 400
