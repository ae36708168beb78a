"""One-time OAuth2 setup for the Spotify account the bot controls."""

from dotenv import set_key

from crowdtune.auth import SpotifyCredentials
from crowdtune.config import Settings


def main() -> None:
    settings = Settings.from_env()
    if not settings.spotify_client_id or not settings.spotify_client_secret:
        raise SystemExit("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set in .env")

    credentials = SpotifyCredentials(
        settings.spotify_client_id,
        settings.spotify_client_secret,
        settings.spotify_redirect_uri,
        env_file=settings.env_file,
    )
    oauth = credentials.oauth()

    print(f"\n  Go to:  {oauth.get_authorize_url()}\n")
    print("After approving, you will be redirected to a page that may not load.")
    redirected = input("Paste the full URL you were redirected to: ").strip()

    code = oauth.parse_response_code(redirected)
    if not code or code == redirected:
        raise SystemExit("No authorization code found in that URL")
    token = oauth.get_access_token(code, as_dict=True, check_cache=False)

    set_key(settings.env_file, "SPOTIFY_ACCESS_TOKEN", token["access_token"])
    set_key(settings.env_file, "SPOTIFY_REFRESH_TOKEN", token["refresh_token"])
    print(f"\nAuthorized! Tokens saved to {settings.env_file}")


if __name__ == "__main__":
    main()
