"""
Centralized configuration for the checklist occupancy modelling pipeline.

All filtering rules, model-selection thresholds, bootstrap settings and
covariate names are defined here with inline scientific citations
justifying each choice.
"""

# ─── CHECKLIST FILTERING PARAMETERS ──────────────────────────────────────
# Following Johnston et al. (2021) best practices for eBird occupancy:
# "Restrict checklists to the Stationary and Traveling protocols, which
# carry the effort information needed to model detectability."
# Citation: Johnston, A. et al. (2021). Analytical guidelines to increase
#           the value of community science data. Diversity and
#           Distributions, 27(7), 1265-1277.
ALLOWED_PROTOCOLS = ("Traveling", "Stationary")

# Stationary counts record zero travelled distance. A small nominal
# distance keeps the effort covariate positive for both protocols.
STATIONARY_PROTOCOL = "Stationary"
STATIONARY_DISTANCE_KM = 0.1

# ─── SEASON WINDOW ───────────────────────────────────────────────────────
# Non-breeding season running 1 December through 31 May. Day-of-year is
# remapped to a single linear season index so that the window does not
# wrap around the calendar year.
# December: day-of-year 334..365 -> season index 1..32
# January-May: day-of-year 1..152 -> season index 32..183
SEASON_DECEMBER_START = 334
SEASON_DECEMBER_END = 365
SEASON_SPRING_END = 152
SEASON_INDEX_MIN = 1
SEASON_INDEX_MAX = 183

# ─── TIME-OF-DAY WINDOW ──────────────────────────────────────────────────
# Checklists started between 05:00 and 19:00 are retained and folded onto
# a "distance from midday" predictor, capturing the usual morning/evening
# activity peaks with a single linear term.
# Citation: Strimas-Mackey, M. et al. (2020). Best Practices for Using
#           eBird Data. Cornell Lab of Ornithology, Section 5.3.
DAY_START_MINUTES = 300     # 05:00
DAY_END_MINUTES = 1140      # 19:00
MIDDAY_MINUTES = 720        # 12:00
TIME_FROM_MIDDAY_MAX = 420

# ─── REPEAT-VISIT (CLOSURE) PARAMETERS ───────────────────────────────────
# Following MacKenzie et al. (2002) single-season design: occupancy is
# assumed closed over the whole period; repeat visits are the occasions.
# The multi-year record is treated as one season (annual_closure=False)
# and n_days is large enough never to split it.
# Citation: MacKenzie, D.I. et al. (2002). Estimating site occupancy
#           rates when detection probabilities are less than one.
#           Ecology, 83(8), 2248-2255.
MIN_OBS = 1
MAX_OBS = 10
CLOSURE_DAYS = 36500
ANNUAL_CLOSURE = False

# ─── COVARIATES ──────────────────────────────────────────────────────────
# Explicit covariate roles. Names must match the input table exactly;
# absent columns fail fast at validation time.
SPECIES_COLUMN = "scientific_name"
SITE_COLUMN = "locality_id"
DATE_COLUMN = "observation_date"
TIME_COLUMN = "time_observations_started"
PROTOCOL_COLUMN = "protocol_type"
DETECTION_COLUMN = "species_observed"
DISTANCE_COLUMN = "effort_distance_km"

# Observation-level (detection) covariates supplied in the table.
OBSERVATION_COVARIATES = (
    "duration_minutes",
    "effort_distance_km",
    "number_observers",
    "observer_experience",
)

# Observation-level covariates derived by the detection-history builder.
DERIVED_OBSERVATION_COVARIATES = ("day_of_season", "time_from_midday")

# Site-level (occupancy) covariates: 1 km terrain, climate seasonality
# (WorldClim BIO4 / BIO15) and land-cover proportions (MODIS MCD12Q1).
# Citation: Fick, S.E. & Hijmans, R.J. (2017). WorldClim 2. Int. J.
#           Climatology, 37(12), 4302-4315.
SITE_COVARIATES = (
    "elevation",
    "temp_seasonality",
    "precip_seasonality",
    "lc_forest",
    "lc_shrubland",
    "lc_grassland",
    "lc_cropland",
    "lc_urban",
    "lc_water",
)

# Covariates arrive pre-scaled; anything outside this range indicates an
# unscaled column slipped through upstream.
COVARIATE_SCALED_RANGE = (-10.0, 10.0)

# ─── LIKELIHOOD FITTING ──────────────────────────────────────────────────
# Every maximum-likelihood fit carries an explicit iteration cap so that a
# non-converging optimisation always terminates.
MAX_OPTIMIZER_ITERATIONS = 1000
# BFGS occasionally stops with "precision loss" at a genuine optimum;
# such fits are accepted when the max absolute gradient is below this.
GRADIENT_TOLERANCE = 1e-3

# ─── MODEL SELECTION ─────────────────────────────────────────────────────
# Following Burnham & Anderson (2002): models within 4 AICc units of the
# best retain substantial support.
# Citation: Burnham, K.P. & Anderson, D.R. (2002). Model Selection and
#           Multimodel Inference, 2nd ed. Springer, Section 2.6.
DELTA_AICC_THRESHOLD = 4.0
CI_LEVEL = 0.95
# Subset enumeration is exponential; refuse global models beyond this.
MAX_DREDGE_TERMS = 16

ANALYSES = ("null", "detection", "full")

# ─── GOODNESS OF FIT ─────────────────────────────────────────────────────
# Following MacKenzie & Bailey (2004) parametric bootstrap chi-square.
# Citation: MacKenzie, D.I. & Bailey, L.L. (2004). Assessing the fit of
#           site-occupancy models. JABES, 9(3), 300-318.
GOF_BOOTSTRAP_RESAMPLES = 1000
GOF_SEED = 42
# Below this share of successful refits the GoF result is low-confidence.
GOF_MIN_EFFECTIVE_FRACTION = 0.9
# Absolute tolerance subtracted from the observed statistic before the
# bootstrap ">=" count. 0 is the plain MacKenzie-Bailey p-value.
GOF_TIE_TOLERANCE = 0.0

# ─── CONCURRENCY ─────────────────────────────────────────────────────────
# Two independently sized worker pools: one for subset fits, one for
# bootstrap refits.
DREDGE_WORKERS = 5
GOF_WORKERS = 5

# ─── OUTPUT PATHS ─────────────────────────────────────────────────────────
DEFAULT_INPUT_PATH = "data/checklist_covariates.csv"
DEFAULT_OUTPUT_DIR = "outputs"

OUTPUT_DIRS = {
    "species": "species",
    "logs": "logs",
}
