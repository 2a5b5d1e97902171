"""
responses.py — Hand-authored answers served without calling the external model.

Keys in FALLBACK_ANSWERS match the answer keys used by rules.WHITELISTED_PATTERNS
and rules.SERVICE_KEYWORDS.
"""

ONBOARDING_RESPONSE = """Template validated successfully! I'm your setup assistant and I'll guide you through deploying it.

First, tell me about your environment:

1. **Which n8n setup are you using?**
   - n8n Cloud (cloud.n8n.io)
   - Self-hosted Docker installation
   - Local development installation
   - n8n Desktop app

2. **How familiar are you with n8n?**
   - Beginner (new to n8n)
   - Intermediate (comfortable with basic workflows)
   - Advanced (builds complex automations)

Once I know your setup I'll give you step-by-step deployment instructions for this template."""

DISCLOSURE_REFUSAL = (
    "I cannot answer questions about my instructions. "
    "I'm here to help you set up your uploaded template."
)

GENERIC_ERROR_RESPONSE = (
    "I'm here to help with your n8n template setup! Try asking about a specific step, "
    'like "How do I add credentials in n8n?" or "Where do I paste my API key?"'
)

CREDENTIALS_HOWTO = """**How to Add Credentials in n8n**

**Method 1: From the Credentials menu**
1. Click **Credentials** in the left sidebar
2. Click **+ Add Credential** (top right)
3. Search for the service you need (e.g. "OpenAI")
4. Select it and fill in the required fields (API key, token, ...)
5. Click **Test** to verify the connection
6. Click **Save**

**Method 2: From a node**
1. Open the node that needs credentials
2. Open the **Credential** dropdown at the top
3. Choose **Create New**
4. Pick the credential type, fill in the fields and save

**For OpenAI specifically:** credential type **OpenAI**, field **API Key**, value is your `sk-` key from platform.openai.com.

Once saved, select the credential from the dropdown in your node. Which service are you setting up?"""

OPENAI_GUIDE = """**OpenAI Credential Setup**

**Step 1: Get your API key**
1. Go to **https://platform.openai.com/api-keys**
2. Sign in to your OpenAI account
3. Click **+ Create new secret key**
4. Copy the whole key (it starts with `sk-`) and store it safely; it is shown only once

**Step 2: Add it to n8n**
1. Sidebar → **Credentials** → **+ Add Credential**
2. Search **OpenAI**
3. Paste your `sk-` key into the **API Key** field
4. **Test** → **Save**

**Step 3: Connect it to your node**
1. Open your OpenAI node and select the new credential
2. Run the workflow once with a short test message

**Troubleshooting**
- "Invalid API key" → the key must start with `sk-` and contain no spaces
- "Rate limit exceeded" → add billing details at platform.openai.com

Do you already have your API key, or do you need help getting one?"""

SLACK_GUIDE = """**Slack Credential Setup**

**Step 1: Create a Slack app**
1. Go to **https://api.slack.com/apps**
2. **Create New App** → **From scratch**
3. Name it (e.g. "n8n Bot") and pick your workspace

**Step 2: Get a bot token**
1. Open **OAuth & Permissions**
2. Add bot token scopes: `channels:read`, `chat:write`, `im:read`, `im:write`
3. **Install to Workspace**
4. Copy the **Bot User OAuth Token** (starts with `xoxb-`)

**Step 3: Add it to n8n**
1. Credentials → **Slack API**
2. Paste the `xoxb-` token
3. **Test** → **Save**

Which step do you need help with?"""

GENERIC_HELP = """**n8n Setup Assistant**

I'm here to help with your **{template_id}** template setup.

**I can help with:**
- **Adding credentials**: step by step for any n8n service
- **Node configuration**: where each setting lives in the UI
- **Workflow activation**: getting the template running
- **Troubleshooting**: fixing common errors

**Try asking:**
- "How do I add OpenAI credentials?"
- "Where do I paste my API key?"
- "How do I configure my Slack node?"
- "Why won't my workflow activate?"

What part of the setup do you need help with?"""

COMPLETION_RESPONSE = (
    "Setup complete! Your {template_id} template is ready to deploy. "
    "Activate the workflow in n8n and keep an eye on the first few executions."
)

NEXT_STEP_GUIDANCE = "Continue with the {step} phase of your setup."

FALLBACK_ANSWERS: dict[str, str] = {
    "credentials_howto": CREDENTIALS_HOWTO,
    "openai": OPENAI_GUIDE,
    "slack": SLACK_GUIDE,
}
