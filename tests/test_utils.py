import io
import json
import os

import pytest
import torch

from builder import Builder
from diff_contact.solver.util import contact_frame, contact_jacobian, orthogonal
from diff_contact.utils.cfg_utils import get_sap_args, get_sys_args, load_config
from diff_contact.utils.sys_utils import (DEBUG, INFO, WARN, HumanOutputFormat, Logger, configure_logger,
                                          get_logger, prepare_output_and_logger)

DTYPE = torch.float64


def test_human_output_format_table():
    stream = io.StringIO()
    logger = Logger(folder=None, output_formats=[HumanOutputFormat(stream)])
    logger.record("newton/cost", torch.tensor(0.5, dtype=DTYPE))
    logger.record("newton/iteration", 3)
    logger.dump(step=3)
    text = stream.getvalue()
    assert "newton/" in text
    assert "cost" in text
    assert "0.5" in text
    # dump后缓存被清空
    assert len(logger.name_to_value) == 0


def test_logger_levels():
    stream = io.StringIO()
    logger = Logger(folder=None, output_formats=[HumanOutputFormat(stream)])
    assert logger.level == INFO
    logger.debug("hidden")
    logger.info("shown")
    assert "hidden" not in stream.getvalue()
    assert "shown" in stream.getvalue()
    logger.set_level(DEBUG)
    logger.debug("now", "visible")
    assert "now visible" in stream.getvalue()


def test_record_mean():
    logger = Logger(folder=None, output_formats=[])
    for value in (1.0, 2.0, 6.0):
        logger.record_mean("line_search/cost", value)
    assert logger.name_to_value["line_search/cost"] == pytest.approx(3.0)


def test_default_logger_is_shared():
    assert get_logger() is get_logger()
    assert get_logger().level == WARN


def test_configure_logger_writes_file(tmp_path):
    folder = str(tmp_path / "solver")
    logger = configure_logger(folder, ["log"])
    logger.record("newton/cost", 1.25)
    logger.dump()
    logger.close()
    with open(os.path.join(folder, "log.txt")) as f:
        assert "cost" in f.read()
    with pytest.raises(ValueError):
        configure_logger(folder, ["csv"])


def test_prepare_output_and_logger(tmp_path):
    all_args = {'sys_args': {'output_path': str(tmp_path / "out"), 'log_formats': ['log'], 'log_level': DEBUG}}
    all_args, loggers = prepare_output_and_logger(all_args, need_logger=True)
    assert os.path.isfile(os.path.join(all_args['sys_args']['output_path'], "all_args"))
    assert set(loggers) == {"problem", "solver"}
    assert loggers["solver"].level == DEBUG
    for logger in loggers.values():
        logger.close()


def test_load_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({'sys_args': {'seed': 3}, 'sap_args': {'mu': 0.2}}))
    all_args = load_config(str(path))
    assert get_sys_args(all_args['sys_args']).seed == 3
    assert get_sap_args(all_args['sap_args']).mu == 0.2

    with pytest.raises(ValueError):
        load_config(str(tmp_path / "missing.json"))
    incomplete = tmp_path / "incomplete.json"
    incomplete.write_text(json.dumps({'sys_args': {}}))
    with pytest.raises(ValueError):
        load_config(str(incomplete))


def test_default_args():
    sys_args = get_sys_args({})
    assert sys_args.dtype == 'float64'
    assert sys_args.log_formats == ['stdout']
    sap_args = get_sap_args({'time_step': 5.0e-3, 'unknown': 1})
    assert sap_args.time_step == 5.0e-3
    assert sap_args.transition_width == 0.02
    assert not hasattr(sap_args, 'unknown')
    with pytest.raises(ValueError):
        get_sap_args({'time_step': 0.0})


def test_builder_colliding_pair():
    builder = Builder({'sys_args': {'seed': 0}, 'sap_args': {'time_step': 0.01}})
    problem, model = builder.build_colliding_pair([1.0, 2.0], [1.0, -1.0])
    assert problem.is_finalized()
    assert model.num_velocities() == 2
    constraint = problem.get_constraint(0)
    assert constraint.parameters.mu == 0.0
    # 法向由clique 0指向clique 1：vn = v1 - v0
    vc = constraint.calc_constraint_velocity(problem.clique_v_star(0), problem.clique_v_star(1))
    torch.testing.assert_close(vc[2], torch.tensor(-2.0, dtype=DTYPE))
    torch.testing.assert_close(model.delassus_diagonal(), torch.tensor([0.5], dtype=DTYPE))


def test_builder_parameters():
    builder = Builder({'sys_args': {}, 'sap_args': {'mu': 0.3}})
    parameters = builder.build_friction_cone_parameters()
    assert parameters.mu == 0.3
    assert builder.build_friction_cone_parameters(mu=0.0).mu == 0.0
    with pytest.raises(ValueError):
        builder.build_friction_cone_parameters(friction=0.1)
    with pytest.raises(ValueError):
        builder.build_friction_cone_parameters(mu=-1.0)


def test_builder_ground_contact():
    builder = Builder({'sys_args': {}, 'sap_args': {}})
    problem = builder.build_problem()
    c = builder.add_clique(problem, [1.0, 1.0, 1.0], [0.0, 0.0, -1.0])
    builder.add_point_contact(problem, c, torch.eye(3, dtype=DTYPE), [0.0, 0.0, 1.0], -1.0e-3)
    model = builder.build_model(problem)
    evaluation = model.calc_cost_and_gradient(model.v_star())
    # 下落的物体受到向上的法向冲量
    assert evaluation.gamma[2] > 0
    assert model.calc_generalized_impulses(model.v_star())[2] > 0


@pytest.mark.parametrize("normal", [[0.0, 0.0, 1.0], [1.0, 2.0, -0.5], [0.0, -3.0, 0.0]])
def test_contact_frame_is_rotation(normal):
    R_CW = contact_frame(torch.tensor(normal, dtype=DTYPE))
    torch.testing.assert_close(R_CW @ R_CW.T, torch.eye(3, dtype=DTYPE))
    torch.testing.assert_close(torch.linalg.det(R_CW), torch.tensor(1.0, dtype=DTYPE))
    n = torch.tensor(normal, dtype=DTYPE)
    torch.testing.assert_close(R_CW[2], n / torch.linalg.vector_norm(n))
    torch.testing.assert_close(torch.dot(orthogonal(n), n), torch.tensor(0.0, dtype=DTYPE))


def test_contact_frame_invalid():
    with pytest.raises(ValueError):
        contact_frame(torch.zeros(3, dtype=DTYPE))
    with pytest.raises(ValueError):
        contact_frame(torch.ones(2, dtype=DTYPE))
    with pytest.raises(ValueError):
        contact_jacobian(torch.eye(3, dtype=DTYPE), torch.ones(2, 2, dtype=DTYPE))
