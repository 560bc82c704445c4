import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pandas as pd
import pytest

from neuropsych_domains import DomainDefinition


@pytest.fixture
def score_frame():
    return pd.DataFrame(
        [
            {"test": "wisc5", "test_name": "WISC-V", "scale": "Block Design", "score": 13, "percentile": 84,
             "domain": "General Cognitive Ability", "subdomain": "Perceptual Reasoning", "narrow": "Visuospatial",
             "rater": "self", "score_type": "scaled_score"},
            {"test": "wisc5", "test_name": "WISC-V", "scale": "Full Scale IQ (FSIQ)", "score": 104, "percentile": 61,
             "domain": "General Cognitive Ability", "subdomain": "Intelligence", "narrow": None,
             "rater": "self", "score_type": "standard_score"},
            {"test": "cvlt3c", "test_name": "CVLT-C", "scale": "Trial 1-5 Free Recall", "score": 45, "percentile": None,
             "domain": "Memory", "subdomain": "Verbal Memory", "narrow": "Learning",
             "rater": "self", "score_type": "t_score"},
            {"test": "basc3_prs", "test_name": "Rating Scale", "scale": "Hyperactivity", "score": 70, "percentile": 96,
             "domain": "ADHD", "subdomain": "Behavior", "narrow": None,
             "rater": "parent", "score_type": "t_score"},
            {"test": "basc3_trs", "test_name": "Rating Scale", "scale": "Hyperactivity", "score": 65, "percentile": 91,
             "domain": "ADHD", "subdomain": "Behavior", "narrow": None,
             "rater": "teacher", "score_type": "t_score"},
        ]
    )


@pytest.fixture
def score_csv(tmp_path, score_frame):
    path = tmp_path / "neurocog.csv"
    score_frame.to_csv(path, index=False)
    return path


@pytest.fixture
def iq_motor_definitions():
    return (
        DomainDefinition(key="iq", name="IQ", number=1),
        DomainDefinition(key="motor", name="Motor", number=2),
    )
