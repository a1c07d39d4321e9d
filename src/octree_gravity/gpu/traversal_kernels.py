"""
CUDA source for the octree force traversal.

One thread handles one particle and follows the same rules as the Numba
kernel in :mod:`octree_gravity.multipole.traversal`; see that module for the
acceptance criterion and the residual bookkeeping. Compiled at runtime with
``ComputeContext.compile`` (CuPy ``RawModule``).
"""

TRAVERSAL_SOURCE = r'''
#define MAX_LEVELS 8
#define NEGLIGIBLE_MASS 1e-10
#define RESIDUAL_MASS_FRACTION 1e-5
#define CELL_FAR 0
#define CELL_NEAR 1
#define CELL_STRADDLE 2

__device__ void axis_distances(double p, double lo, double e, double* d, double* f) {
    double hi = lo + e;
    if (p < lo) {
        *d = lo - p;
    } else if (p > hi) {
        *d = p - hi;
    } else {
        *d = 0.0;
    }
    *f = fmax(fabs(p - lo), fabs(p - hi));
}

__device__ int classify(double near_d, double far_d, double size, double theta) {
    if (near_d * theta >= size) return CELL_FAR;
    if (far_d * theta < size) return CELL_NEAR;
    return CELL_STRADDLE;
}

__device__ bool is_opened(const double* p, long long cx, long long cy, long long cz,
                          const long long* o, const double* bounds,
                          double ex, double ey, double ez, double theta) {
    if (cx == o[0] && cy == o[1] && cz == o[2]) return true;
    double dx, fx, dy, fy, dz, fz;
    axis_distances(p[0], bounds[0] + cx * ex, ex, &dx, &fx);
    axis_distances(p[1], bounds[1] + cy * ey, ey, &dy, &fy);
    axis_distances(p[2], bounds[2] + cz * ez, ez, &dz, &fz);
    double near_d = sqrt(dx * dx + dy * dy + dz * dz);
    double far_d = sqrt(fx * fx + fy * fy + fz * fz);
    double size = fmax(ex, fmax(ey, ez));
    return classify(near_d, far_d, size, theta) != CELL_FAR;
}

__device__ bool in_window(long long cx, long long cy, long long cz, const long long* o, int radius) {
    return llabs(cx - o[0]) <= radius && llabs(cy - o[1]) <= radius && llabs(cz - o[2]) <= radius;
}

__device__ bool reached(int level, long long cx, long long cy, long long cz, const double* p,
                        long long own[][3], const long long* levels, int n_levels,
                        const double* bounds, double theta, int radius) {
    for (int k = level + 1; k < n_levels; k++) {
        long long r = levels[2 * k + 1];
        cx = min(cx / 2, r - 1);
        cy = min(cy / 2, r - 1);
        cz = min(cz / 2, r - 1);
        if (k < n_levels - 1 && !in_window(cx, cy, cz, own[k], radius)) return false;
        double ex = bounds[3] / r, ey = bounds[4] / r, ez = bounds[5] / r;
        if (!is_opened(p, cx, cy, cz, own[k], bounds, ex, ey, ez, theta)) return false;
    }
    return true;
}

__device__ void load(double* mom, long long flat, const float* a0, const float* a1,
                     const float* a2, int use_quad, double sign) {
    for (int c = 0; c < 4; c++) mom[c] += sign * (double)a0[flat * 4 + c];
    if (use_quad) {
        for (int c = 0; c < 4; c++) mom[4 + c] += sign * (double)a1[flat * 4 + c];
        mom[8] += sign * (double)a2[flat * 4 + 0];
        mom[9] += sign * (double)a2[flat * 4 + 1];
    }
}

__device__ void point_mass_accel(const double* p, const double* mom, double G, double eps2,
                                 int use_quad, double* acc) {
    double m = mom[3];
    double cx = mom[0] / m, cy = mom[1] / m, cz = mom[2] / m;
    double rx = p[0] - cx, ry = p[1] - cy, rz = p[2] - cz;
    double d2 = rx * rx + ry * ry + rz * rz + eps2;
    double inv_d = rsqrt(d2);
    double inv_d3 = inv_d * inv_d * inv_d;
    acc[0] -= G * m * rx * inv_d3;
    acc[1] -= G * m * ry * inv_d3;
    acc[2] -= G * m * rz * inv_d3;

    if (use_quad) {
        double sxx = mom[4] - m * cx * cx;
        double syy = mom[5] - m * cy * cy;
        double szz = mom[6] - m * cz * cz;
        double sxy = mom[7] - m * cx * cy;
        double sxz = mom[8] - m * cx * cz;
        double syz = mom[9] - m * cy * cz;
        double tr = sxx + syy + szz;
        double qxx = 3.0 * sxx - tr, qyy = 3.0 * syy - tr, qzz = 3.0 * szz - tr;
        double qxy = 3.0 * sxy, qxz = 3.0 * sxz, qyz = 3.0 * syz;
        double qrx = qxx * rx + qxy * ry + qxz * rz;
        double qry = qxy * rx + qyy * ry + qyz * rz;
        double qrz = qxz * rx + qyz * ry + qzz * rz;
        double rqr = rx * qrx + ry * qry + rz * qrz;
        double inv_d5 = inv_d3 * inv_d * inv_d;
        double inv_d7 = inv_d5 * inv_d * inv_d;
        acc[0] += G * (qrx * inv_d5 - 2.5 * rqr * rx * inv_d7);
        acc[1] += G * (qry * inv_d5 - 2.5 * rqr * ry * inv_d7);
        acc[2] += G * (qrz * inv_d5 - 2.5 * rqr * rz * inv_d7);
    }
}

extern "C" __global__
void traverse_octree(const float* pos, const int* own0, const int* inside,
                     const float* a0, const float* a1, const float* a2, const int* occ,
                     const long long* levels, int n_levels, const double* bounds,
                     double theta, double G, double eps2, int radius,
                     int use_quad, int use_occ, float* out, int n) {
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n) return;

    out[i * 3 + 0] = 0.0f;
    out[i * 3 + 1] = 0.0f;
    out[i * 3 + 2] = 0.0f;

    double p[3] = {(double)pos[i * 4 + 0], (double)pos[i * 4 + 1], (double)pos[i * 4 + 2]};
    double pm = (double)pos[i * 4 + 3];
    if (!isfinite(p[0]) || !isfinite(p[1]) || !isfinite(p[2]) || !isfinite(pm) || pm <= 0.0) return;

    long long own[MAX_LEVELS][3];
    for (int a = 0; a < 3; a++) own[0][a] = own0[i * 3 + a];
    for (int k = 1; k < n_levels; k++) {
        for (int a = 0; a < 3; a++) own[k][a] = min(own[k - 1][a] / 2, levels[2 * k + 1] - 1);
    }

    double acc[3] = {0.0, 0.0, 0.0};
    double mom[10];

    for (int level = n_levels - 1; level >= 0; level--) {
        long long off = levels[2 * level];
        long long r = levels[2 * level + 1];
        double ex = bounds[3] / r, ey = bounds[4] / r, ez = bounds[5] / r;
        const long long* o = own[level];

        long long lo[3], hi[3];
        for (int a = 0; a < 3; a++) {
            if (level == n_levels - 1) {
                lo[a] = 0;
                hi[a] = r - 1;
            } else {
                lo[a] = max(o[a] - radius, 0LL);
                hi[a] = min(o[a] + radius, r - 1);
            }
        }

        for (long long cz = lo[2]; cz <= hi[2]; cz++)
        for (long long cy = lo[1]; cy <= hi[1]; cy++)
        for (long long cx = lo[0]; cx <= hi[0]; cx++) {
            long long flat = off + (cz * r + cy) * r + cx;
            if (use_occ && occ[flat] == 0) continue;
            if ((double)a0[flat * 4 + 3] < NEGLIGIBLE_MASS) continue;
            if (!reached(level, cx, cy, cz, p, own, levels, n_levels, bounds, theta, radius)) continue;

            bool is_own = cx == o[0] && cy == o[1] && cz == o[2];
            for (int c = 0; c < 10; c++) mom[c] = 0.0;
            load(mom, flat, a0, a1, a2, use_quad, 1.0);
            double cell_mass = mom[3];
            double threshold = NEGLIGIBLE_MASS;

            if (level == 0) {
                if (is_own && inside[i]) {
                    mom[0] -= pm * p[0];
                    mom[1] -= pm * p[1];
                    mom[2] -= pm * p[2];
                    mom[3] -= pm;
                    if (use_quad) {
                        mom[4] -= pm * p[0] * p[0];
                        mom[5] -= pm * p[1] * p[1];
                        mom[6] -= pm * p[2] * p[2];
                        mom[7] -= pm * p[0] * p[1];
                        mom[8] -= pm * p[0] * p[2];
                        mom[9] -= pm * p[1] * p[2];
                    }
                    threshold = fmax(NEGLIGIBLE_MASS, RESIDUAL_MASS_FRACTION * cell_mass);
                }
            } else if (is_opened(p, cx, cy, cz, o, bounds, ex, ey, ez, theta)) {
                long long cr = levels[2 * (level - 1) + 1];
                long long coff = levels[2 * (level - 1)];
                const long long* co = own[level - 1];
                long long c[3] = {cx, cy, cz};
                long long clo[3], chi[3];
                bool all_inside = true;
                for (int a = 0; a < 3; a++) {
                    clo[a] = 2 * c[a];
                    chi[a] = (c[a] == r - 1) ? cr - 1 : min(2 * c[a] + 1, cr - 1);
                    if (clo[a] < co[a] - radius || chi[a] > co[a] + radius) all_inside = false;
                }
                if (all_inside) continue;
                for (long long kz = clo[2]; kz <= chi[2]; kz++)
                for (long long ky = clo[1]; ky <= chi[1]; ky++)
                for (long long kx = clo[0]; kx <= chi[0]; kx++) {
                    if (in_window(kx, ky, kz, co, radius)) {
                        load(mom, coff + (kz * cr + ky) * cr + kx, a0, a1, a2, use_quad, -1.0);
                    }
                }
                threshold = fmax(NEGLIGIBLE_MASS, RESIDUAL_MASS_FRACTION * cell_mass);
            }

            if (mom[3] < threshold) continue;
            point_mass_accel(p, mom, G, eps2, use_quad, acc);
        }
    }

    out[i * 3 + 0] = (float)acc[0];
    out[i * 3 + 1] = (float)acc[1];
    out[i * 3 + 2] = (float)acc[2];
}
'''
