import time
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session, select

from typerush.main import app
from typerush import crud, models


def setup_db(tmp_path):
    db = tmp_path / 'api.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    app.state.engine = engine
    return engine


def age_run(engine, run_id, seconds):
    """Pretend the run was issued `seconds` ago instead of sleeping in the test."""
    with Session(engine) as s:
        run = s.get(models.GameRun, run_id)
        run.issued_at = crud.as_utc(run.issued_at) - timedelta(seconds=seconds)
        run.expires_at = crud.as_utc(run.expires_at) - timedelta(seconds=seconds)
        s.add(run)
        s.commit()


def start(client, name='alice', mode=15):
    r = client.post('/api/start-run', json={"player_name": name, "game_mode": mode})
    assert r.status_code == 200, r.text
    return r.json()


def payload(run, name='alice', mode=15, **overrides):
    body = {
        "run_id": run["run_id"],
        "token": run["token"],
        "player_name": name,
        "game_mode": mode,
        "lps": 10,
        "accuracy": 100,
        "time": 1.5,
        "ms_per_letter": 100,
        "total_letters": 15,
        "uncorrected_errors": 0,
        "corrected_errors": 0,
    }
    body.update(overrides)
    return body


def test_health(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json().get('status') == 'ok'
    assert r.headers.get('X-Request-ID')


def test_start_run_contract(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    r = client.post(
        '/api/start-run',
        json={"player_name": "alice", "game_mode": 15},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "typing-test"},
    )
    assert r.status_code == 200
    data = r.json()
    assert data['success'] is True
    assert data['run_id'] and data['token']
    assert isinstance(data['expires_at'], int)

    with Session(engine) as s:
        run = s.get(models.GameRun, data['run_id'])
        assert run.ip == '203.0.113.7'
        assert run.user_agent == 'typing-test'
        assert run.token_hash == crud.hash_token(data['token'])
        assert int(crud.as_utc(run.expires_at).timestamp()) == data['expires_at']


def test_start_run_rejects_bad_input(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    cases = [
        ({"player_name": "alice", "game_mode": 45}, "Invalid game mode"),
        ({"player_name": "a b", "game_mode": 15}, "Invalid player name format"),
        ({"player_name": "x" * 51, "game_mode": 15}, "Invalid player name format"),
        ({"player_name": "shit_typer", "game_mode": 15}, "Player name contains inappropriate content"),
        ({"player_name": "alice"}, "Missing required fields"),
        ({"player_name": None, "game_mode": 15}, "Missing required fields"),
        ({"player_name": "", "game_mode": 15}, "Missing required fields"),
        ({"player_name": "alice", "game_mode": "fifteen"}, "Invalid request body"),
    ]
    for body, reason in cases:
        r = client.post('/api/start-run', json=body)
        assert r.status_code == 400, body
        assert r.json() == {"success": False, "error": reason}, body


def test_reference_scenario_records_new_best(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 2.5)

    r = client.post('/api/game-results', json=payload(run))
    assert r.status_code == 200, r.text
    data = r.json()
    assert data['success'] is True
    assert data['isNewBest'] is True
    assert data['id'] is not None
    assert abs(data['score'] - 10.0) < 1e-9
    assert data['rank'].startswith('Chain Slayer')

    board = client.get('/api/leaderboard', params={"game_mode": 15}).json()
    assert board['success'] is True
    assert board['leaders'][0]['player_name'] == 'alice'
    assert board['leaders'][0]['id'] == data['id']


def test_double_redemption_is_rejected(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 3)

    first = client.post('/api/game-results', json=payload(run))
    second = client.post('/api/game-results', json=payload(run))
    assert first.json()['success'] is True
    assert second.status_code == 400
    assert second.json() == {"success": False, "error": "Run session already used"}


def test_too_fast_and_expired_runs(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    r = client.post('/api/game-results', json=payload(run))
    assert r.status_code == 400
    assert r.json()['error'] == 'Game completed too quickly'

    age_run(engine, run['run_id'], 31)
    r = client.post('/api/game-results', json=payload(run))
    assert r.json()['error'] == 'Run session expired'


def test_wrong_token_is_invalid_session(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 3)
    forged = dict(run, token='not-the-token')
    r = client.post('/api/game-results', json=payload(forged))
    assert r.status_code == 400
    assert r.json()['error'] == 'Invalid or expired run session'


def test_ms_per_letter_mismatch_is_not_recorded(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 3)

    r = client.post('/api/game-results', json=payload(run, ms_per_letter=180))
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "ms_per_letter calculation mismatch"}
    with Session(engine) as s:
        assert s.exec(select(models.GameResult)).all() == []
        # the token was spent by the attempt
        assert s.get(models.GameRun, run['run_id']).used_at is not None


def test_huge_error_counts_are_a_client_error(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 3)

    r = client.post('/api/game-results', json=payload(run, corrected_errors=10 ** 400, total_letters=1))
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Error counts out of valid range"}
    with Session(engine) as s:
        assert s.exec(select(models.GameResult)).all() == []


def test_mode_must_match_run(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client, mode=15)
    age_run(engine, run['run_id'], 3)
    r = client.post('/api/game-results', json=payload(run, mode=30, time=3.0))
    assert r.status_code == 400
    assert r.json()['error'] == 'Run session does not match submission'


def test_client_score_is_ignored(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run = start(client)
    age_run(engine, run['run_id'], 3)
    r = client.post('/api/game-results', json=payload(run, score=19.9, rank="Grandmaster of Speed 👑"))
    assert r.status_code == 200
    with Session(engine) as s:
        row = s.exec(select(models.GameResult)).one()
        assert abs(row.score - 10.0) < 1e-9
        assert row.rank.startswith('Chain Slayer')


def test_second_run_with_lower_score_is_not_new_best(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    run1 = start(client)
    age_run(engine, run1['run_id'], 3)
    best = client.post('/api/game-results', json=payload(run1)).json()

    run2 = start(client)
    age_run(engine, run2['run_id'], 3)
    slower = client.post('/api/game-results', json=payload(run2, lps=5, ms_per_letter=200, isTwitterUser=True)).json()
    assert slower == {
        "success": True,
        "isNewBest": False,
        "id": best['id'],
        "score": slower['score'],
        "rank": slower['rank'],
    }

    player = client.get('/api/players/alice/best', params={"game_mode": 15}).json()
    assert player['record']['score'] == best['score']
    assert player['record']['isTwitterUser'] is False


def test_missing_fields_on_submit(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.post('/api/game-results', json={"run_id": "x", "token": "y"})
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Missing required fields"}


def test_leaderboard_param_validation(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.get('/api/leaderboard', params={"game_mode": 45}).status_code == 400
    assert client.get('/api/leaderboard', params={"limit": 0}).status_code == 400
    assert client.get('/api/leaderboard', params={"limit": 501}).status_code == 400
    r = client.get('/api/leaderboard')
    assert r.status_code == 200
    assert r.json() == {"success": True, "game_mode": 15, "leaders": []}


def test_player_endpoints(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.get('/api/players/alice/scores').json() == {"success": True, "scores": []}
    assert client.get('/api/players/alice/best').json() == {"success": True, "record": None}
    assert client.get('/api/players/a%20b/scores').status_code == 400


def test_cache_stats_endpoint(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    client.get('/api/leaderboard')
    client.get('/api/leaderboard')
    data = client.get('/api/cache/stats').json()
    assert data['status'] == 'ok'
    assert data['cache_stats']['hits'] >= 1


def test_leaderboard_read_racing_a_new_best_is_not_cached(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    with Session(engine) as s:
        crud.submit_result(s, 'alice', 15, 5.0, 5.0, 100.0, 'r', 10.0, 200.0)

    real_get_leaderboard = crud.get_leaderboard

    def read_then_improve(session, game_mode, limit=10, policy=None):
        leaders = real_get_leaderboard(session, game_mode, limit=limit, policy=policy)
        # a new best commits after the board was read but before it is cached
        with Session(engine) as other:
            assert crud.submit_result(other, 'alice', 15, 9.0, 9.0, 100.0, 'r', 10.0, 111.0).is_new_best
        return leaders

    monkeypatch.setattr(crud, 'get_leaderboard', read_then_improve)
    first = client.get('/api/leaderboard', params={"game_mode": 15})
    assert first.json()['leaders'][0]['score'] == 5.0

    monkeypatch.setattr(crud, 'get_leaderboard', real_get_leaderboard)
    second = client.get('/api/leaderboard', params={"game_mode": 15})
    assert second.json()['leaders'][0]['score'] == 9.0


def test_lifespan_sweeps_expired_cache_entries(tmp_path, monkeypatch):
    import typerush.main as typerush_main

    setup_db(tmp_path)
    sweeps = []
    monkeypatch.setattr(typerush_main, 'CACHE_CLEANUP_SECONDS', 0.01)
    monkeypatch.setattr(typerush_main, 'cleanup_cache_periodically', lambda: sweeps.append(1) or 0)
    with TestClient(app) as client:
        deadline = time.time() + 2
        while not sweeps and time.time() < deadline:
            time.sleep(0.01)
        assert client.get('/health').status_code == 200
    assert sweeps
