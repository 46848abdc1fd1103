"""HTML page rendering for the landing and Trakt sign-in pages."""

from __future__ import annotations

import json
from textwrap import dedent
from urllib.parse import urlparse

from .config import Settings


LANDING_TEMPLATE = dedent(
    """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>__APP_NAME__</title>
    <style>
        :root {
            color-scheme: dark;
            font-family: 'Inter', 'Segoe UI', system-ui, -apple-system, sans-serif;
            --surface: #141414;
            --surface-strong: #1f1f1f;
            --text-primary: #f5f5f5;
            --text-muted: #a6a6a6;
            --outline: #2b2b2b;
            --accent: #e50914;
            background: #000000;
            color: var(--text-primary);
        }
        * {
            box-sizing: border-box;
        }
        body {
            margin: 0;
            min-height: 100vh;
            background: #000000;
        }
        main {
            max-width: 760px;
            margin: 0 auto;
            padding: 3rem 1.5rem 4rem;
        }
        header {
            text-align: center;
            margin-bottom: 2rem;
        }
        header p {
            color: var(--text-muted);
        }
        section {
            background: var(--surface);
            border: 1px solid var(--outline);
            border-radius: 12px;
            padding: 1.5rem;
            margin-bottom: 1.5rem;
        }
        label {
            display: block;
            margin: 0.75rem 0 0.25rem;
            color: var(--text-muted);
            font-size: 0.9rem;
        }
        input {
            width: 100%;
            padding: 0.6rem 0.75rem;
            border-radius: 8px;
            border: 1px solid var(--outline);
            background: var(--surface-strong);
            color: var(--text-primary);
        }
        button, .button {
            display: inline-block;
            margin-top: 1rem;
            padding: 0.65rem 1.2rem;
            border: none;
            border-radius: 8px;
            background: var(--accent);
            color: #ffffff;
            font-weight: 600;
            cursor: pointer;
            text-decoration: none;
        }
        button.secondary {
            background: var(--surface-strong);
            border: 1px solid var(--outline);
        }
        code {
            display: block;
            word-break: break-all;
            padding: 0.75rem;
            border-radius: 8px;
            background: var(--surface-strong);
        }
        .status {
            margin-top: 0.75rem;
            color: var(--text-muted);
        }
        .status.error {
            color: #ff6b6b;
        }
        progress {
            width: 100%;
            margin-top: 1rem;
        }
        [hidden] {
            display: none !important;
        }
    </style>
</head>
<body>
    <main>
        <header>
            <h1>__APP_NAME__</h1>
            <p>Trakt recommendations, Netflix Top 10 and TMDB new releases in Stremio.</p>
        </header>

        <section id="connect-section">
            <h2>1. Connect Trakt</h2>
            <p class="status">Sign in with Trakt to get recommendations made for you
            and to mark what you watch in Stremio as watched on Trakt.</p>
            <div id="credential-fields">
                <label for="client-id">Trakt client ID (optional)</label>
                <input id="client-id" autocomplete="off" />
                <label for="client-secret">Trakt client secret (optional)</label>
                <input id="client-secret" type="password" autocomplete="off" />
            </div>
            <button id="connect-button" type="button">Connect Trakt</button>
            <p id="connect-status" class="status"></p>
        </section>

        <section id="install-section">
            <h2>2. Install</h2>
            <p class="status" id="install-hint">Without a Trakt account the public manifest
            shows trending titles instead of personal recommendations.</p>
            <code id="manifest-url"></code>
            <a id="install-link" class="button" href="#">Install in Stremio</a>
            <button id="logout-button" class="secondary" type="button" hidden>Disconnect</button>
        </section>

        <section id="import-section" hidden>
            <h2>3. Import Netflix history</h2>
            <p class="status">Upload the <em>NetflixViewingHistory.csv</em> export to mark
            those titles as watched on Trakt.</p>
            <input id="csv-file" type="file" accept=".csv,text/csv" />
            <button id="import-button" type="button">Import</button>
            <progress id="import-progress" max="100" value="0" hidden></progress>
            <p id="import-status" class="status"></p>
        </section>
    </main>
    <script>
        (function() {
            const defaults = __DEFAULTS_JSON__;
            const storageKey = 'personal-catalog.session';
            const connectButton = document.getElementById('connect-button');
            const connectStatus = document.getElementById('connect-status');
            const credentialFields = document.getElementById('credential-fields');
            const manifestUrl = document.getElementById('manifest-url');
            const installLink = document.getElementById('install-link');
            const installHint = document.getElementById('install-hint');
            const logoutButton = document.getElementById('logout-button');
            const importSection = document.getElementById('import-section');
            const importButton = document.getElementById('import-button');
            const importStatus = document.getElementById('import-status');
            const importProgress = document.getElementById('import-progress');
            let sessionId = window.localStorage.getItem(storageKey);

            if (defaults.traktLoginAvailable) {
                credentialFields.hidden = true;
            }

            function setStatus(element, message, isError) {
                element.textContent = message || '';
                element.classList.toggle('error', Boolean(isError));
            }

            function render() {
                const url = sessionId
                    ? `${defaults.baseUrl}/${sessionId}/manifest.json`
                    : `${defaults.baseUrl}/manifest.json`;
                manifestUrl.textContent = url;
                installLink.href = url.replace(/^https?:/, 'stremio:');
                logoutButton.hidden = !sessionId;
                importSection.hidden = !sessionId;
                if (sessionId) {
                    installHint.textContent = 'Your personal manifest is ready.';
                }
            }

            async function refreshStatus() {
                if (!sessionId) {
                    render();
                    return;
                }
                try {
                    const response = await fetch(`/auth/status?session=${encodeURIComponent(sessionId)}`);
                    const payload = await response.json();
                    if (!payload.authenticated) {
                        window.localStorage.removeItem(storageKey);
                        sessionId = null;
                        setStatus(connectStatus, 'Your Trakt session expired. Please connect again.', true);
                    } else if (payload.username) {
                        setStatus(connectStatus, `Connected as ${payload.username}.`);
                    }
                } catch (err) {
                    console.error('Unable to check session status', err);
                }
                render();
            }

            function handleAuthMessage(payload) {
                if (!payload || payload.source !== 'trakt-oauth') {
                    return;
                }
                if (payload.type === 'TRAKT_AUTH_SUCCESS' && payload.sessionId) {
                    sessionId = payload.sessionId;
                    window.localStorage.setItem(storageKey, sessionId);
                    setStatus(connectStatus, payload.username ? `Connected as ${payload.username}.` : 'Connected.');
                    render();
                } else {
                    setStatus(connectStatus, payload.error_description || 'Trakt sign in failed.', true);
                }
            }

            window.addEventListener('message', (event) => {
                if (defaults.callbackOrigin && event.origin !== defaults.callbackOrigin) {
                    return;
                }
                handleAuthMessage(event.data);
            });
            if ('BroadcastChannel' in window) {
                const channel = new BroadcastChannel('personal-catalog.trakt-oauth');
                channel.addEventListener('message', (event) => handleAuthMessage(event.data));
            }

            connectButton.addEventListener('click', async () => {
                setStatus(connectStatus, 'Opening Trakt...');
                const body = {
                    clientId: document.getElementById('client-id').value.trim() || undefined,
                    clientSecret: document.getElementById('client-secret').value.trim() || undefined,
                };
                try {
                    const response = await fetch('/api/trakt/login-url', {
                        method: 'POST',
                        headers: { 'Content-Type': 'application/json' },
                        body: JSON.stringify(body),
                    });
                    const payload = await response.json();
                    if (!response.ok) {
                        const detail = payload.detail || {};
                        throw new Error(detail.description || detail || 'Unable to start sign in');
                    }
                    window.open(payload.url, 'trakt-oauth', 'width=520,height=720');
                } catch (err) {
                    setStatus(connectStatus, err.message, true);
                }
            });

            logoutButton.addEventListener('click', async () => {
                if (!sessionId) {
                    return;
                }
                await fetch('/auth/logout', {
                    method: 'POST',
                    headers: { 'Content-Type': 'application/json' },
                    body: JSON.stringify({ sessionId }),
                });
                window.localStorage.removeItem(storageKey);
                sessionId = null;
                setStatus(connectStatus, 'Disconnected.');
                render();
            });

            importButton.addEventListener('click', async () => {
                const file = document.getElementById('csv-file').files[0];
                if (!file || !sessionId) {
                    setStatus(importStatus, 'Choose a CSV file first.', true);
                    return;
                }
                const csvData = await file.text();
                importProgress.hidden = false;
                importProgress.value = 0;
                const events = new EventSource(`/api/import-netflix/progress/${sessionId}`);
                events.onmessage = (event) => {
                    const payload = JSON.parse(event.data);
                    if (typeof payload.progress === 'number') {
                        importProgress.value = payload.progress;
                    }
                    if (payload.message) {
                        setStatus(importStatus, payload.message, payload.type === 'error');
                    }
                    if (payload.type === 'complete' || payload.type === 'error') {
                        events.close();
                    }
                };
                try {
                    const response = await fetch('/api/import-netflix', {
                        method: 'POST',
                        headers: { 'Content-Type': 'application/json' },
                        body: JSON.stringify({ csvData, sessionId }),
                    });
                    const payload = await response.json();
                    if (!response.ok || !payload.success) {
                        throw new Error(payload.error || (payload.detail && payload.detail.toString()) || 'Import failed');
                    }
                    setStatus(
                        importStatus,
                        `Matched ${payload.matched}, synced ${payload.synced}, skipped ${payload.skipped}.`
                    );
                } catch (err) {
                    setStatus(importStatus, err.message, true);
                } finally {
                    events.close();
                }
            });

            refreshStatus();
        })();
    </script>
</body>
</html>
    """
)


def render_landing_page(settings: Settings, *, callback_origin: str = "") -> str:
    """Return the full HTML for the ``/`` landing page."""

    resolved_callback_origin = ""
    candidate_origin = callback_origin.strip()
    if candidate_origin:
        resolved_callback_origin = candidate_origin.rstrip("/")
    elif settings.trakt_redirect_uri:
        parsed = urlparse(str(settings.trakt_redirect_uri))
        if parsed.scheme and parsed.netloc:
            resolved_callback_origin = f"{parsed.scheme}://{parsed.netloc}".rstrip("/")

    defaults = {
        "appName": settings.app_name,
        "baseUrl": settings.public_base_url,
        "traktLoginAvailable": bool(
            settings.trakt_client_id and settings.trakt_client_secret
        ),
        "callbackOrigin": resolved_callback_origin,
    }
    defaults_json = json.dumps(defaults).replace("</", "<\\/")

    html = LANDING_TEMPLATE
    replacements = {
        "__APP_NAME__": settings.app_name,
        "__DEFAULTS_JSON__": defaults_json,
    }
    for placeholder, value in replacements.items():
        html = html.replace(placeholder, value)
    return html
