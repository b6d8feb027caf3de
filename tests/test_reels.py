from pathlib import Path

from reelgram.config import settings


def upload(client, user, caption="first reel", content_type="video/mp4", filename="clip.mp4"):
    return client.post(
        "/api/reels",
        headers=user.headers,
        files={"video": (filename, b"\x00\x00\x00\x18ftypmp42", content_type)},
        data={"caption": caption},
    )


def test_upload_saves_file_and_row(client, make_user):
    alice = make_user("alice")
    res = upload(client, alice, caption="  hello world  ")

    assert res.status_code == 200
    reel = res.json()["reel"]
    assert reel["caption"] == "hello world"
    assert reel["user_id"] == alice.id
    assert reel["likes_count"] == reel["comments_count"] == 0
    assert reel["video_url"].startswith("/uploads/reels/")
    assert reel["video_url"].endswith(".mp4")

    saved = Path(settings.UPLOAD_DIR) / "reels" / reel["video_url"].rsplit("/", 1)[-1]
    assert saved.read_bytes() == b"\x00\x00\x00\x18ftypmp42"
    assert client.get(reel["video_url"]).status_code == 200


def test_upload_requires_auth_and_video(client, make_user):
    alice = make_user("alice")
    res = client.post("/api/reels", files={"video": ("clip.mp4", b"data", "video/mp4")})
    assert res.status_code == 401
    assert upload(client, alice, content_type="text/plain", filename="notes.txt").status_code == 400


def test_list_is_newest_first_and_paginated(client, make_user):
    alice = make_user("alice")
    ids = [upload(client, alice, caption=f"reel {n}").json()["reel"]["id"] for n in range(3)]

    reels = client.get("/api/reels").json()["reels"]
    assert [r["id"] for r in reels] == ids[::-1]

    page_two = client.get("/api/reels", params={"page": 2, "limit": 2}).json()["reels"]
    assert [r["id"] for r in page_two] == [ids[0]]


def test_like_toggles(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    reel_id = upload(client, alice).json()["reel"]["id"]

    assert client.post(f"/api/reels/{reel_id}/like", headers=bob.headers).json() == {"liked": True, "likes_count": 1}
    assert client.post(f"/api/reels/{reel_id}/like", headers=alice.headers).json() == {"liked": True, "likes_count": 2}
    assert client.post(f"/api/reels/{reel_id}/like", headers=bob.headers).json() == {"liked": False, "likes_count": 1}

    assert client.post("/api/reels/999/like", headers=bob.headers).status_code == 404


def test_comments(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    reel_id = upload(client, alice).json()["reel"]["id"]

    res = client.post(f"/api/reels/{reel_id}/comments", headers=bob.headers, json={"text": "nice " * 200})
    assert res.status_code == 200
    assert len(res.json()["comment"]["text"]) == 500
    client.post(f"/api/reels/{reel_id}/comments", headers=alice.headers, json={"text": "thanks"})

    comments = client.get(f"/api/reels/{reel_id}/comments").json()["comments"]
    assert [c["user_id"] for c in comments] == [bob.id, alice.id]
    assert client.get("/api/reels").json()["reels"][0]["comments_count"] == 2

    assert client.post(f"/api/reels/{reel_id}/comments", headers=bob.headers, json={"text": "   "}).status_code == 400
    assert client.get("/api/reels/999/comments").status_code == 404


def test_users_lookup(client, make_user):
    make_user("alice", display_name="Alice Liddell")
    make_user("bob")

    assert client.get("/api/users/by-name", params={"name": "Alice Liddell"}).json()["user"]["username"] == "alice"
    assert client.get("/api/users/by-name", params={"name": "nobody"}).status_code == 404
    assert [u["username"] for u in client.get("/api/users/suggested").json()["users"]] == ["bob", "alice"]
